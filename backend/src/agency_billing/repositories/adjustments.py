"""Billing adjustment repository."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.adjustment import BillingAdjustment


class AdjustmentRepository:
    """Per-tenant billing modifiers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, tenant_id: int, adjustment_id: UUID) -> Optional[BillingAdjustment]:
        result = await self.db.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.id == adjustment_id,
                BillingAdjustment.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: int) -> list[BillingAdjustment]:
        result = await self.db.execute(
            select(BillingAdjustment)
            .where(BillingAdjustment.tenant_id == tenant_id)
            .order_by(BillingAdjustment.created_at)
        )
        return list(result.scalars().all())

    async def effective_on(self, tenant_id: int, on: datetime) -> list[BillingAdjustment]:
        """Active adjustments whose date range covers ``on``."""
        result = await self.db.execute(
            select(BillingAdjustment)
            .where(
                BillingAdjustment.tenant_id == tenant_id,
                BillingAdjustment.active.is_(True),
                or_(BillingAdjustment.starts_at.is_(None), BillingAdjustment.starts_at <= on),
                or_(BillingAdjustment.ends_at.is_(None), BillingAdjustment.ends_at >= on),
            )
            .order_by(BillingAdjustment.created_at)
        )
        return list(result.scalars().all())

    async def add(self, adjustment: BillingAdjustment) -> BillingAdjustment:
        self.db.add(adjustment)
        await self.db.flush()
        return adjustment

    async def delete(self, adjustment: BillingAdjustment) -> None:
        await self.db.delete(adjustment)
        await self.db.flush()
