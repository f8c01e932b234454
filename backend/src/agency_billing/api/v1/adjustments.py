"""Admin endpoints for per-tenant billing adjustments."""
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.api.deps import get_db, require_platform_admin
from agency_billing.auth.context import BillingContext
from agency_billing.schemas.adjustment import Adjustment, AdjustmentCreate, AdjustmentUpdate
from agency_billing.services.adjustment_service import AdjustmentService

router = APIRouter(prefix="/admin/tenants/{tenant_id}/adjustments", tags=["Adjustments"])


@router.get("", response_model=list[Adjustment])
async def list_adjustments(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(require_platform_admin),
) -> list[Adjustment]:
    """List a tenant's adjustments, oldest first."""
    return await AdjustmentService(db).list_adjustments(tenant_id)


@router.post("", response_model=Adjustment, status_code=status.HTTP_201_CREATED)
async def create_adjustment(
    tenant_id: int,
    adjustment_data: AdjustmentCreate,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(require_platform_admin),
) -> Adjustment:
    """
    Create an adjustment.

    - **kind**: DISCOUNT, TAX or SURCHARGE
    - **mode**: PERCENT of the base price or ABSOLUTE amount
    - **starts_at** / **ends_at**: Optional effective range (ends_at >= starts_at)

    Applied to cycles frozen while the adjustment is effective.
    """
    return await AdjustmentService(db).create_adjustment(tenant_id, adjustment_data, actor_id=ctx.actor_id)


@router.patch("/{adjustment_id}", response_model=Adjustment)
async def update_adjustment(
    tenant_id: int,
    adjustment_id: UUID,
    adjustment_data: AdjustmentUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(require_platform_admin),
) -> Adjustment:
    return await AdjustmentService(db).update_adjustment(
        tenant_id, adjustment_id, adjustment_data, actor_id=ctx.actor_id
    )


@router.delete("/{adjustment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_adjustment(
    tenant_id: int,
    adjustment_id: UUID,
    db: AsyncSession = Depends(get_db),
    ctx: BillingContext = Depends(require_platform_admin),
) -> None:
    await AdjustmentService(db).delete_adjustment(tenant_id, adjustment_id, actor_id=ctx.actor_id)
