"""Pydantic schemas for direct-debit mandates."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from agency_billing.core.vault import mask_account
from agency_billing.models.mandate import MandateStatus
from agency_billing.models.payment_method import PaymentMethodStatus, PaymentMethodType


class DirectDebitMandateCreate(BaseModel):
    """Schema for submitting a direct-debit mandate."""

    holder_name: str = Field(..., max_length=200, description="Account holder name")
    tax_id: str = Field(..., max_length=20, description="Holder tax identifier")
    account_number: str = Field(..., max_length=64, description="22-digit bank account number")
    consent_accepted: bool = Field(..., description="Mandate text accepted")
    consent_version: str | None = Field(default=None, min_length=1, max_length=64)


class MandateStatusUpdate(BaseModel):
    """Schema for an admin mandate status transition."""

    tenant_id: int | None = Field(default=None, description="Tenant whose mandate changes (when mandate_id is absent)")
    mandate_id: UUID | None = Field(default=None, description="Mandate to transition")
    status: MandateStatus
    bank_reference: str | None = Field(default=None, max_length=120)
    reason_code: str | None = Field(default=None, max_length=120)
    reason_text: str | None = Field(default=None, max_length=500)


class MandateView(BaseModel):
    """Mandate as shown to callers. The account number is only ever masked."""

    id: UUID
    status: MandateStatus
    account_last4: str = Field(exclude=True)
    consent_version: str
    consent_accepted_at: datetime
    bank_reference: str | None
    activated_at: datetime | None
    revoked_at: datetime | None
    rejection_code: str | None
    rejection_reason: str | None
    last_status_check_at: datetime | None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def account_masked(self) -> str:
        return mask_account(self.account_last4)


class PaymentMethodView(BaseModel):
    id: UUID
    method_type: PaymentMethodType
    status: PaymentMethodStatus
    is_default: bool
    holder_name: str | None
    holder_tax_id: str | None

    model_config = ConfigDict(from_attributes=True)


class DirectDebitMandateResponse(BaseModel):
    """Result of a mandate submission."""

    subscription_id: UUID
    next_anchor_date: datetime | None
    payment_method: PaymentMethodView
    mandate: MandateView
    created: bool
