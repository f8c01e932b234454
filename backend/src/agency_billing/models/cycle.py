"""Billing cycle model: one frozen billing period per subscription."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Integer, Numeric, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base, JSONType, UTCDateTime


class CycleStatus(str, enum.Enum):
    """Billing cycle status."""

    OPEN = "OPEN"
    FROZEN = "FROZEN"
    PAID = "PAID"
    CANCELED = "CANCELED"


class BillingCycle(Base):
    """
    One billing period of a subscription.

    Totals, FX rate and pricing snapshot are fixed when frozen_at is set.
    """

    __tablename__ = "billing_cycles"
    __table_args__ = (UniqueConstraint("subscription_id", "anchor_date", name="uq_billing_cycle_anchor"),)

    subscription_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id = Column(Integer, nullable=False, index=True)
    anchor_date = Column(UTCDateTime, nullable=False, index=True)
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    status = Column(SQLEnum(CycleStatus), nullable=False, default=CycleStatus.OPEN)
    fx_rate_date = Column(UTCDateTime, nullable=True)
    fx_rate = Column(Numeric(18, 6), nullable=True)  # local currency per USD
    total_usd = Column(Numeric(18, 2), nullable=True)
    total_local = Column(Numeric(18, 2), nullable=True)
    pricing_snapshot = Column(JSONType, nullable=True)
    frozen_at = Column(UTCDateTime, nullable=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="cycles")
    charges = relationship("Charge", back_populates="cycle")

    def __repr__(self) -> str:
        """String representation."""
        return f"<BillingCycle(id={self.id}, anchor_date={self.anchor_date}, status={self.status.value})>"
