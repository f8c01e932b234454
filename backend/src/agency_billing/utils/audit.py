"""Billing event logging for the append-only audit trail."""
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.billing_event import BillingEvent

logger = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    """Convert payload values to JSON-compatible types."""
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value") and not isinstance(value, (bytes, bytearray)):
        return _jsonable(value.value)
    return str(value)


async def log_billing_event(
    db: AsyncSession,
    event_type: str,
    tenant_id: Optional[int] = None,
    subscription_id: Optional[UUID] = None,
    payload: Optional[dict] = None,
    actor_id: Optional[str] = None,
) -> BillingEvent:
    """
    Append a billing event.

    Args:
        db: Database session
        event_type: Event name (MANDATE_CREATED, ATTEMPT_MARKED_PAID, etc.)
        tenant_id: Tenant the event belongs to
        subscription_id: Subscription, when known
        payload: Event details; never contains plaintext secrets
        actor_id: User or job that caused the event

    Returns:
        The persisted event
    """
    event = BillingEvent(
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        event_type=event_type,
        payload=_jsonable(payload or {}),
        actor_id=actor_id,
    )

    db.add(event)
    await db.flush()

    logger.info(
        "billing_event_created",
        event_type=event_type,
        tenant_id=tenant_id,
        subscription_id=str(subscription_id) if subscription_id else None,
        actor_id=actor_id,
    )
    return event
