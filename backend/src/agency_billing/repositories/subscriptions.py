"""Subscription repository."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.subscription import Subscription


class SubscriptionRepository:
    """Tenant subscriptions. One per tenant, enforced by a unique constraint."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, subscription_id: UUID) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def get_by_tenant(self, tenant_id: int) -> Optional[Subscription]:
        result = await self.db.execute(select(Subscription).where(Subscription.tenant_id == tenant_id))
        return result.scalar_one_or_none()

    async def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        await self.db.flush()
        return subscription
