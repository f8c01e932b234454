"""Adjustment service for per-tenant discounts, taxes and surcharges."""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.errors import InvalidBillingInput, NotFound
from agency_billing.models.adjustment import AdjustmentMode, BillingAdjustment
from agency_billing.repositories.adjustments import AdjustmentRepository
from agency_billing.schemas.adjustment import AdjustmentCreate, AdjustmentUpdate
from agency_billing.utils.audit import log_billing_event

logger = structlog.get_logger(__name__)


def _check(adjustment: BillingAdjustment) -> None:
    if adjustment.starts_at and adjustment.ends_at and adjustment.ends_at < adjustment.starts_at:
        raise InvalidBillingInput("ends_at must be on or after starts_at")
    if adjustment.value is None or adjustment.value < 0:
        raise InvalidBillingInput("Adjustment value must not be negative")
    if adjustment.mode == AdjustmentMode.PERCENT and adjustment.value > 100:
        raise InvalidBillingInput("Percentage adjustments cannot exceed 100")


class AdjustmentService:
    """Service for billing adjustments applied when cycles are priced."""

    def __init__(self, db: AsyncSession):
        """Initialize adjustment service."""
        self.db = db
        self.adjustments = AdjustmentRepository(db)

    async def list_adjustments(self, tenant_id: int) -> list[BillingAdjustment]:
        return await self.adjustments.list_for_tenant(tenant_id)

    async def get_adjustment(self, tenant_id: int, adjustment_id: UUID) -> BillingAdjustment:
        adjustment = await self.adjustments.get(tenant_id, adjustment_id)
        if adjustment is None:
            raise NotFound(f"Adjustment {adjustment_id} not found")
        return adjustment

    async def create_adjustment(
        self, tenant_id: int, adjustment_data: AdjustmentCreate, actor_id: Optional[str] = None
    ) -> BillingAdjustment:
        """
        Create an adjustment for a tenant.

        Args:
            tenant_id: Tenant ID
            adjustment_data: Adjustment creation data
            actor_id: Admin creating it

        Returns:
            Created adjustment
        """
        adjustment = BillingAdjustment(tenant_id=tenant_id, **adjustment_data.model_dump())
        _check(adjustment)
        await self.adjustments.add(adjustment)

        await log_billing_event(
            self.db,
            "ADJUSTMENT_CREATED",
            tenant_id=tenant_id,
            payload={"adjustment_id": adjustment.id, **adjustment_data.model_dump(mode="json")},
            actor_id=actor_id,
        )
        logger.info("adjustment_created", tenant_id=tenant_id, adjustment_id=str(adjustment.id))
        return adjustment

    async def update_adjustment(
        self,
        tenant_id: int,
        adjustment_id: UUID,
        adjustment_data: AdjustmentUpdate,
        actor_id: Optional[str] = None,
    ) -> BillingAdjustment:
        """Update provided fields of an adjustment."""
        adjustment = await self.get_adjustment(tenant_id, adjustment_id)
        changes = adjustment_data.model_dump(exclude_unset=True)
        for field, value in changes.items():
            if field == "currency" and value:
                value = value.upper()
            setattr(adjustment, field, value)
        _check(adjustment)
        await self.db.flush()

        await log_billing_event(
            self.db,
            "ADJUSTMENT_UPDATED",
            tenant_id=tenant_id,
            payload={"adjustment_id": adjustment.id, "changes": adjustment_data.model_dump(mode="json", exclude_unset=True)},
            actor_id=actor_id,
        )
        logger.info("adjustment_updated", tenant_id=tenant_id, adjustment_id=str(adjustment.id))
        return adjustment

    async def delete_adjustment(self, tenant_id: int, adjustment_id: UUID, actor_id: Optional[str] = None) -> None:
        adjustment = await self.get_adjustment(tenant_id, adjustment_id)
        await self.adjustments.delete(adjustment)
        await log_billing_event(
            self.db,
            "ADJUSTMENT_DELETED",
            tenant_id=tenant_id,
            payload={"adjustment_id": adjustment_id},
            actor_id=actor_id,
        )
        logger.info("adjustment_deleted", tenant_id=tenant_id, adjustment_id=str(adjustment_id))
