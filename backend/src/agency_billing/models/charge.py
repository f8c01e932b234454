"""Charge model: a monetary obligation collected through attempts."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, Uuid, event, inspect
from sqlalchemy.orm import relationship

from agency_billing.errors import ChargeAlreadyPaid
from agency_billing.models.base import Base, UTCDateTime


class ChargeKind(str, enum.Enum):
    """Origin of a charge."""

    RECURRING = "RECURRING"
    EXTRA = "EXTRA"


class ChargeStatus(str, enum.Enum):
    """Charge collection status."""

    PENDING = "PENDING"
    PRESENTED = "PRESENTED"
    PAID = "PAID"
    REJECTED = "REJECTED"
    ERROR = "ERROR"
    CANCELED = "CANCELED"


class ReconciliationStatus(str, enum.Enum):
    """How well the settled amount matched the amount due."""

    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PARTIAL = "PARTIAL"
    UNMATCHED = "UNMATCHED"
    ERROR = "ERROR"


class Charge(Base):
    """
    Monetary obligation from a billing cycle or an ad-hoc extra.

    Once PAID the charge is immutable except for audit metadata.
    """

    __tablename__ = "billing_charges"

    tenant_id = Column(Integer, nullable=False, index=True)
    cycle_id = Column(Uuid(as_uuid=True), ForeignKey("billing_cycles.id", ondelete="SET NULL"), nullable=True, index=True)
    kind = Column(SQLEnum(ChargeKind), nullable=False, default=ChargeKind.RECURRING)
    status = Column(SQLEnum(ChargeStatus), nullable=False, default=ChargeStatus.PENDING, index=True)
    due_date = Column(UTCDateTime, nullable=False, index=True)
    amount_due = Column(Numeric(18, 2), nullable=False)
    amount_paid = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="ARS")
    paid_currency = Column(String(3), nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)
    paid_reference = Column(String, nullable=True)
    paid_via_channel = Column(String, nullable=True)
    reconciliation_status = Column(
        SQLEnum(ReconciliationStatus), nullable=False, default=ReconciliationStatus.PENDING
    )
    description = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)

    # Relationships
    cycle = relationship("BillingCycle", back_populates="charges")
    attempts = relationship("Attempt", back_populates="charge", order_by="Attempt.attempt_no")

    @property
    def is_paid(self) -> bool:
        """True when the charge is settled."""
        return self.status == ChargeStatus.PAID or self.paid_at is not None

    def __repr__(self) -> str:
        """String representation."""
        return f"<Charge(id={self.id}, kind={self.kind.value}, status={self.status.value}, amount={self.amount_due})>"


# Columns that may still change on a PAID charge
_PAID_AUDIT_COLUMNS = {"updated_at", "reconciliation_status", "paid_via_channel"}


@event.listens_for(Charge, "before_update")
def _guard_paid_charge(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status != ChargeStatus.PAID:
        return
    for column_attr in mapper.column_attrs:
        if column_attr.key in _PAID_AUDIT_COLUMNS:
            continue
        if state.attrs[column_attr.key].history.has_changes():
            raise ChargeAlreadyPaid(f"Charge {target.id} is paid; {column_attr.key} cannot change")
