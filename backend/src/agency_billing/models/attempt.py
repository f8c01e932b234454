"""Attempt model: one try to collect a charge through a channel."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base, UTCDateTime


class AttemptChannel(str, enum.Enum):
    """Collection channel of an attempt."""

    DIRECT_DEBIT = "DIRECT_DEBIT"
    FALLBACK = "FALLBACK"


class AttemptStatus(str, enum.Enum):
    """Attempt status. PROCESSING while the attempt sits in an outbound file."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    REJECTED = "REJECTED"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class Attempt(Base):
    """Collection attempt against a charge, numbered from 1 per charge."""

    __tablename__ = "billing_attempts"
    __table_args__ = (UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempt_no"),)

    charge_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_charges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_no = Column(Integer, nullable=False)
    channel = Column(SQLEnum(AttemptChannel), nullable=False, default=AttemptChannel.DIRECT_DEBIT)
    status = Column(SQLEnum(AttemptStatus), nullable=False, default=AttemptStatus.PENDING, index=True)
    scheduled_for = Column(UTCDateTime, nullable=True, index=True)
    processed_at = Column(UTCDateTime, nullable=True)
    external_reference = Column(String, nullable=True, index=True)
    payment_method_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    rejection_code = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    paid_reference = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    # Relationships
    charge = relationship("Charge", back_populates="attempts")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Attempt(id={self.id}, attempt_no={self.attempt_no}, status={self.status.value})>"
