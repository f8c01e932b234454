"""Uniform contract over online payment backends used as fallback channel."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field


class IntentCreationStatus(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    PRESENTED = "PRESENTED"


class MappedPaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class CancelFinalStatus(str, Enum):
    CANCELED = "CANCELED"
    PAID = "PAID"


class CreateIntentRequest(BaseModel):
    """Input for creating a payment intent."""

    charge_id: str
    tenant_id: int
    amount: Decimal
    currency: str = "ARS"
    external_reference: str
    idempotency_key: str
    expires_at: Optional[datetime] = None


class CreateIntentResult(BaseModel):
    provider_payment_id: str
    status: IntentCreationStatus
    payment_url: Optional[str] = None
    qr_payload: Optional[str] = None
    provider_status: Optional[str] = None
    provider_raw_payload: dict[str, Any] = Field(default_factory=dict)


class IntentSnapshot(BaseModel):
    """Locally stored view of an intent passed back to the provider."""

    provider_payment_id: Optional[str] = None
    external_reference: str
    status: Optional[str] = None
    provider_status: Optional[str] = None
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class PaymentStatusResult(BaseModel):
    provider_status: str
    mapped_status: MappedPaymentStatus
    paid_at: Optional[datetime] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class CancelResult(BaseModel):
    success: bool = True
    final_status: CancelFinalStatus
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class FallbackProvider(Protocol):
    """Contract every fallback payment backend implements."""

    key: str
    version: str
    production_ready: bool

    async def create_payment_intent_for_charge(self, request: CreateIntentRequest) -> CreateIntentResult:
        ...

    async def get_payment_status(self, snapshot: IntentSnapshot, now: datetime) -> PaymentStatusResult:
        ...

    async def cancel_payment_intent(self, snapshot: IntentSnapshot, now: datetime) -> CancelResult:
        ...


def normalize_status(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def resolve_mapped_status(snapshot: IntentSnapshot, now: datetime) -> tuple[MappedPaymentStatus, bool]:
    """
    Map a snapshot to a payment status.

    Terminal provider statuses win. An intent past ``expires_at`` without one
    is EXPIRED locally. Returns the status and whether it came from the TTL.
    """
    status = normalize_status(snapshot.provider_status or snapshot.status)
    if status in (MappedPaymentStatus.PAID.value, MappedPaymentStatus.FAILED.value, MappedPaymentStatus.EXPIRED.value):
        return MappedPaymentStatus(status), False
    if snapshot.expires_at is not None and snapshot.expires_at <= now:
        return MappedPaymentStatus.EXPIRED, True
    return MappedPaymentStatus.PENDING, False


def is_snapshot_paid(snapshot: IntentSnapshot) -> bool:
    return "PAID" in (normalize_status(snapshot.status), normalize_status(snapshot.provider_status))
