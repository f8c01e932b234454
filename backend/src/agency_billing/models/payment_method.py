"""Payment method model for a subscription's collection instruments."""
import enum

from sqlalchemy import Boolean, Column, Enum as SQLEnum, ForeignKey, Index, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base


class PaymentMethodType(str, enum.Enum):
    """Kind of collection instrument."""

    DIRECT_DEBIT = "DIRECT_DEBIT"
    QR_FALLBACK = "QR_FALLBACK"
    REDIRECT_FALLBACK = "REDIRECT_FALLBACK"


class PaymentMethodStatus(str, enum.Enum):
    """Payment method status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class PaymentMethod(Base):
    """
    Collection instrument of a subscription.

    One row per method type; at most one default per subscription, enforced by
    a partial unique index.
    """

    __tablename__ = "billing_payment_methods"
    __table_args__ = (
        UniqueConstraint("subscription_id", "method_type", name="uq_billing_payment_method_type"),
        Index(
            "uq_billing_payment_method_default",
            "subscription_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    subscription_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    method_type = Column(SQLEnum(PaymentMethodType), nullable=False)
    status = Column(SQLEnum(PaymentMethodStatus), nullable=False, default=PaymentMethodStatus.PENDING)
    is_default = Column(Boolean, nullable=False, default=False)
    holder_name = Column(String, nullable=True)
    holder_tax_id = Column(String, nullable=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="payment_methods")
    mandate = relationship("Mandate", back_populates="payment_method", uselist=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentMethod(id={self.id}, type={self.method_type.value}, default={self.is_default})>"
