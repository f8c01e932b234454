"""Pydantic schemas for billing adjustments."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agency_billing.models.adjustment import AdjustmentKind, AdjustmentMode


class AdjustmentBase(BaseModel):
    kind: AdjustmentKind
    mode: AdjustmentMode
    value: Decimal = Field(..., ge=0, description="Percentage (PERCENT) or amount (ABSOLUTE)")
    currency: str | None = Field(default=None, min_length=3, max_length=3, description="Currency of ABSOLUTE values")
    label: str | None = Field(default=None, max_length=120)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    active: bool = True

    @model_validator(mode="after")
    def _check_range(self):
        if self.starts_at and self.ends_at and self.ends_at < self.starts_at:
            raise ValueError("ends_at must be on or after starts_at")
        if self.mode == AdjustmentMode.PERCENT and self.value > 100:
            raise ValueError("Percentage adjustments cannot exceed 100")
        if self.currency:
            self.currency = self.currency.upper()
        return self


class AdjustmentCreate(AdjustmentBase):
    """Schema for creating an adjustment."""


class AdjustmentUpdate(BaseModel):
    """Schema for updating an adjustment. Only provided fields change."""

    kind: AdjustmentKind | None = None
    mode: AdjustmentMode | None = None
    value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    label: str | None = Field(default=None, max_length=120)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    active: bool | None = None


class Adjustment(AdjustmentBase):
    """Schema for returning an adjustment."""

    id: UUID
    tenant_id: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
