"""Fallback intent model: an online payment handle tied to a charge."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, Uuid

from agency_billing.models.base import Base, JSONType, UTCDateTime


class FallbackIntentStatus(str, enum.Enum):
    """Fallback intent status."""

    CREATED = "CREATED"
    PENDING = "PENDING"
    PRESENTED = "PRESENTED"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


TERMINAL_INTENT_STATUSES = {
    FallbackIntentStatus.PAID,
    FallbackIntentStatus.EXPIRED,
    FallbackIntentStatus.CANCELED,
    FallbackIntentStatus.FAILED,
}


class FallbackIntent(Base):
    """
    Provider-specific payment intent used when direct debit is unavailable.

    Provides idempotency through idempotency_key.
    """

    __tablename__ = "billing_fallback_intents"

    tenant_id = Column(Integer, nullable=False, index=True)
    charge_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_charges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_id = Column(Uuid(as_uuid=True), ForeignKey("billing_attempts.id", ondelete="SET NULL"), nullable=True)
    provider = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(FallbackIntentStatus), nullable=False, default=FallbackIntentStatus.CREATED, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ARS")
    external_reference = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)
    provider_payment_id = Column(String, nullable=True, index=True)
    provider_status = Column(String, nullable=True)
    payment_url = Column(Text, nullable=True)
    qr_payload = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)
    failure_code = Column(String, nullable=True)
    failure_message = Column(Text, nullable=True)
    provider_raw_payload = Column(JSONType, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<FallbackIntent(id={self.id}, provider={self.provider}, status={self.status.value})>"
