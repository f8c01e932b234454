"""Fallback intent repository."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.fallback_intent import FallbackIntent


class FallbackIntentRepository:
    """Fallback payment intents per charge."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, intent_id: UUID) -> Optional[FallbackIntent]:
        return await self.db.get(FallbackIntent, intent_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[FallbackIntent]:
        result = await self.db.execute(select(FallbackIntent).where(FallbackIntent.idempotency_key == idempotency_key))
        return result.scalar_one_or_none()

    async def list_for_charge(self, charge_id: UUID) -> list[FallbackIntent]:
        result = await self.db.execute(
            select(FallbackIntent).where(FallbackIntent.charge_id == charge_id).order_by(FallbackIntent.created_at)
        )
        return list(result.scalars().all())

    async def add(self, intent: FallbackIntent) -> FallbackIntent:
        self.db.add(intent)
        await self.db.flush()
        return intent
