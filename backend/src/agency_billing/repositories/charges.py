"""Cycle and charge repository."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.charge import Charge
from agency_billing.models.cycle import BillingCycle


class ChargeRepository:
    """Billing cycles and the charges they produce."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_cycle(self, cycle_id: UUID) -> Optional[BillingCycle]:
        return await self.db.get(BillingCycle, cycle_id)

    async def get_cycle_for_anchor(self, subscription_id: UUID, anchor_date: datetime) -> Optional[BillingCycle]:
        result = await self.db.execute(
            select(BillingCycle).where(
                BillingCycle.subscription_id == subscription_id,
                BillingCycle.anchor_date == anchor_date,
            )
        )
        return result.scalar_one_or_none()

    async def get_current_cycle(self, subscription_id: UUID, upto: datetime) -> Optional[BillingCycle]:
        """Latest cycle whose anchor date is not after ``upto``."""
        result = await self.db.execute(
            select(BillingCycle)
            .where(BillingCycle.subscription_id == subscription_id, BillingCycle.anchor_date <= upto)
            .order_by(BillingCycle.anchor_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_cycle(self, cycle: BillingCycle) -> BillingCycle:
        self.db.add(cycle)
        await self.db.flush()
        return cycle

    async def get(self, charge_id: UUID) -> Optional[Charge]:
        return await self.db.get(Charge, charge_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Charge]:
        result = await self.db.execute(select(Charge).where(Charge.idempotency_key == idempotency_key))
        return result.scalar_one_or_none()

    async def latest_for_cycle(self, cycle_id: UUID) -> Optional[Charge]:
        result = await self.db.execute(
            select(Charge).where(Charge.cycle_id == cycle_id).order_by(Charge.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: int, limit: int = 100) -> list[Charge]:
        result = await self.db.execute(
            select(Charge).where(Charge.tenant_id == tenant_id).order_by(Charge.due_date.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def add(self, charge: Charge) -> Charge:
        self.db.add(charge)
        await self.db.flush()
        return charge
