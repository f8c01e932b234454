"""Pydantic schemas for fallback payment intents."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from agency_billing.models.fallback_intent import FallbackIntentStatus


class FallbackIntentCreate(BaseModel):
    """Schema for creating a fallback intent for a charge."""

    provider: str | None = Field(default=None, description="Provider key; unknown keys use the default provider")
    idempotency_key: str | None = Field(default=None, max_length=200)


class FallbackIntent(BaseModel):
    """Schema for returning a fallback intent."""

    id: UUID
    tenant_id: int
    charge_id: UUID
    provider: str
    status: FallbackIntentStatus
    amount: Decimal
    currency: str
    external_reference: str
    provider_payment_id: str | None
    payment_url: str | None
    qr_payload: str | None
    expires_at: datetime | None
    paid_at: datetime | None
    failure_code: str | None
    failure_message: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
