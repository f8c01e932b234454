"""Pydantic schemas for direct-debit batches."""
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from agency_billing.models.batch import BatchDirection, BatchStatus


class PresentmentBatchCreate(BaseModel):
    """Schema for building an outbound presentment batch."""

    business_date: date | None = Field(default=None, description="Business day; defaults to today")


class Batch(BaseModel):
    """Schema for returning a batch."""

    id: UUID
    parent_batch_id: UUID | None
    direction: BatchDirection
    channel: str
    adapter: str
    business_date: datetime
    status: BatchStatus
    record_count: int
    amount_total: Decimal
    checksum: str | None
    storage_key: str | None
    sha256: str | None
    original_file_name: str | None
    total_paid_rows: int
    total_rejected_rows: int
    total_error_rows: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImportSummary(BaseModel):
    """Outcome of importing a response file."""

    inbound_batch_id: UUID
    duplicate: bool = False
    matched_rows: int = 0
    paid: int = 0
    rejected: int = 0
    error_rows: int = 0
    parse_warnings: list[str] = Field(default_factory=list)
