"""Billing event repository (read side of the audit trail)."""
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.billing_event import BillingEvent


class BillingEventRepository:
    """Queries over the append-only billing events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_for_tenant(
        self, tenant_id: int, event_type: Optional[str] = None, limit: int = 200
    ) -> list[BillingEvent]:
        query = select(BillingEvent).where(BillingEvent.tenant_id == tenant_id)
        if event_type:
            query = query.where(BillingEvent.event_type == event_type)
        result = await self.db.execute(query.order_by(BillingEvent.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def count(self, tenant_id: int, event_type: Optional[str] = None) -> int:
        query = select(func.count(BillingEvent.id)).where(BillingEvent.tenant_id == tenant_id)
        if event_type:
            query = query.where(BillingEvent.event_type == event_type)
        result = await self.db.execute(query)
        return int(result.scalar_one())
