"""Billing adjustment model: per-tenant taxes, discounts and surcharges."""
import enum

from sqlalchemy import Boolean, Column, Enum as SQLEnum, Integer, Numeric, String

from agency_billing.models.base import Base, UTCDateTime


class AdjustmentKind(str, enum.Enum):
    """Direction of an adjustment."""

    DISCOUNT = "DISCOUNT"
    TAX = "TAX"
    SURCHARGE = "SURCHARGE"


class AdjustmentMode(str, enum.Enum):
    """How the adjustment value is applied."""

    PERCENT = "PERCENT"
    ABSOLUTE = "ABSOLUTE"


class BillingAdjustment(Base):
    """Modifier applied to a tenant's cycles within an effective date range."""

    __tablename__ = "billing_adjustments"

    tenant_id = Column(Integer, nullable=False, index=True)
    kind = Column(SQLEnum(AdjustmentKind), nullable=False)
    mode = Column(SQLEnum(AdjustmentMode), nullable=False)
    value = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=True)  # ABSOLUTE only
    label = Column(String, nullable=True)
    starts_at = Column(UTCDateTime, nullable=True)
    ends_at = Column(UTCDateTime, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<BillingAdjustment(id={self.id}, kind={self.kind.value}, mode={self.mode.value}, value={self.value})>"
