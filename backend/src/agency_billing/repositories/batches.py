"""Presentment batch repository."""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.models.batch import BatchDirection, BatchItem, BatchStatus, PresentmentBatch


class BatchRepository:
    """Outbound and inbound bank files with their lines."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, batch_id: UUID) -> Optional[PresentmentBatch]:
        return await self.db.get(PresentmentBatch, batch_id)

    async def get_for_update(self, batch_id: UUID) -> Optional[PresentmentBatch]:
        """Batch locked for the rest of the transaction (no-op on SQLite)."""
        result = await self.db.execute(
            select(PresentmentBatch)
            .where(PresentmentBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_inbound_by_sha(self, parent_batch_id: UUID, sha256: str) -> Optional[PresentmentBatch]:
        """Processed response file with this content, if it was imported before."""
        result = await self.db.execute(
            select(PresentmentBatch).where(
                PresentmentBatch.direction == BatchDirection.INBOUND,
                PresentmentBatch.parent_batch_id == parent_batch_id,
                PresentmentBatch.sha256 == sha256,
                PresentmentBatch.status == BatchStatus.PROCESSED,
            )
        )
        return result.scalars().first()

    async def list_items(self, batch_id: UUID) -> list[BatchItem]:
        result = await self.db.execute(
            select(BatchItem).where(BatchItem.batch_id == batch_id).order_by(BatchItem.line_no)
        )
        return list(result.scalars().all())

    async def list_batches(self, direction: Optional[BatchDirection] = None, limit: int = 300) -> list[PresentmentBatch]:
        query = select(PresentmentBatch)
        if direction:
            query = query.where(PresentmentBatch.direction == direction)
        query = query.order_by(PresentmentBatch.business_date.desc(), PresentmentBatch.created_at.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def add(self, batch: PresentmentBatch) -> PresentmentBatch:
        self.db.add(batch)
        await self.db.flush()
        return batch

    async def add_item(self, item: BatchItem) -> BatchItem:
        self.db.add(item)
        await self.db.flush()
        return item
