"""Billing event model: append-only audit trail."""
from sqlalchemy import Column, Integer, String, Uuid, event

from agency_billing.errors import InvalidStateTransition
from agency_billing.models.base import Base, JSONType


class BillingEvent(Base):
    """
    Audit record emitted by every mutating billing operation.

    Rows are never updated or deleted and carry no foreign keys, so they
    outlive the records they describe.
    """

    __tablename__ = "billing_events"

    tenant_id = Column(Integer, nullable=True, index=True)
    subscription_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    actor_id = Column(String, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<BillingEvent(event_type={self.event_type}, tenant_id={self.tenant_id})>"


@event.listens_for(BillingEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise InvalidStateTransition("Billing events are append-only")


@event.listens_for(BillingEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise InvalidStateTransition("Billing events are append-only")
