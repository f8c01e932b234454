"""Mandate model: a tenant's direct-debit authorization."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base, UTCDateTime


class MandateStatus(str, enum.Enum):
    """Mandate lifecycle status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class Mandate(Base):
    """
    Direct-debit mandate, 1:1 with a DIRECT_DEBIT payment method.

    The account number is stored only encrypted; last4 and hash support display
    and equality lookups without decryption.
    """

    __tablename__ = "billing_mandates"

    payment_method_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_payment_methods.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    status = Column(SQLEnum(MandateStatus), nullable=False, default=MandateStatus.PENDING, index=True)
    account_encrypted = Column(Text, nullable=False)
    account_last4 = Column(String(4), nullable=False)
    account_hash = Column(String(64), nullable=False, index=True)
    consent_version = Column(String, nullable=False, default="v1")
    consent_accepted_at = Column(UTCDateTime, nullable=False)
    consent_ip = Column(String, nullable=True)
    bank_reference = Column(String, nullable=True)
    activated_at = Column(UTCDateTime, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    rejection_code = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    last_status_check_at = Column(UTCDateTime, nullable=True)

    # Relationships
    payment_method = relationship("PaymentMethod", back_populates="mandate")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Mandate(id={self.id}, status={self.status.value}, last4={self.account_last4})>"
