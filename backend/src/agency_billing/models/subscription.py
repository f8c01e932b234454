"""Subscription model: one recurring billing agreement per tenant."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, Integer, Numeric, String
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base, UTCDateTime


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle status."""

    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class Subscription(Base):
    """
    Tenant subscription to recurring billing.

    The anchor day and timezone define the tenant-local calendar date on which
    every billing cycle starts.
    """

    __tablename__ = "billing_subscriptions"

    tenant_id = Column(Integer, nullable=False, unique=True, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    anchor_day = Column(Integer, nullable=False, default=8)
    timezone = Column(String, nullable=False, default="America/Argentina/Buenos_Aires")
    direct_debit_discount_pct = Column(Numeric(5, 2), nullable=False, default=10)
    next_anchor_date = Column(UTCDateTime, nullable=True, index=True)

    # Relationships
    payment_methods = relationship("PaymentMethod", back_populates="subscription", cascade="all, delete-orphan")
    cycles = relationship("BillingCycle", back_populates="subscription")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, status={self.status.value})>"
