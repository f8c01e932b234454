"""Pydantic schemas for the subscription collection overview."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from agency_billing.core.overview import OverviewFlags, OverviewStatus
from agency_billing.models.attempt import AttemptChannel, AttemptStatus
from agency_billing.models.charge import ChargeStatus, ReconciliationStatus
from agency_billing.models.cycle import CycleStatus
from agency_billing.models.mandate import MandateStatus
from agency_billing.models.payment_method import PaymentMethodType


class CycleSummary(BaseModel):
    """Current billing cycle."""

    id: UUID
    anchor_date: datetime
    period_start: datetime
    period_end: datetime
    status: CycleStatus
    fx_rate_date: datetime | None
    fx_rate: Decimal | None
    total_usd: Decimal | None
    total_local: Decimal | None
    frozen_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ChargeSummary(BaseModel):
    """Charge of the current cycle."""

    id: UUID
    status: ChargeStatus
    due_date: datetime
    amount_due: Decimal
    amount_paid: Decimal | None
    paid_at: datetime | None
    reconciliation_status: ReconciliationStatus

    model_config = ConfigDict(from_attributes=True)


class AttemptSummary(BaseModel):
    """Attempt of the current charge."""

    id: UUID
    attempt_no: int
    status: AttemptStatus
    channel: AttemptChannel
    scheduled_for: datetime | None
    processed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionOverview(BaseModel):
    """Collection overview of a tenant."""

    status: OverviewStatus
    next_anchor_date: datetime | None = None
    retry_days: list[int] = Field(default_factory=list, description="Attempt offsets in days from the anchor")
    method_type: PaymentMethodType | None = None
    mandate_status: MandateStatus | None = None
    current_cycle: CycleSummary | None = None
    current_charge: ChargeSummary | None = None
    attempts: list[AttemptSummary] = Field(default_factory=list)
    next_attempt_at: datetime | None = None
    flags: OverviewFlags = Field(default_factory=OverviewFlags)
