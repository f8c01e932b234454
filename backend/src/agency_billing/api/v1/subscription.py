"""Tenant subscription endpoints: overview and direct-debit mandate."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.api.deps import (
    get_db,
    get_settings,
    require_platform_admin,
    require_tenant_manager,
    require_tenant_reader,
)
from agency_billing.auth.context import BillingContext
from agency_billing.config import Settings
from agency_billing.models.base import utcnow
from agency_billing.schemas.mandate import (
    DirectDebitMandateCreate,
    DirectDebitMandateResponse,
    MandateStatusUpdate,
    MandateView,
    PaymentMethodView,
)
from agency_billing.schemas.overview import SubscriptionOverview
from agency_billing.services.mandate_service import MandateService
from agency_billing.services.overview_service import OverviewService

router = APIRouter(prefix="/subscription", tags=["Subscription"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.get("/overview", response_model=SubscriptionOverview)
async def get_overview(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: BillingContext = Depends(require_tenant_reader),
) -> SubscriptionOverview:
    """
    Get the collection overview of the caller's tenant.

    Returns the dunning status (ACTIVE, PAST_DUE, SUSPENDED or CANCELED), the
    current cycle with its charge and attempts, and the default payment method.
    """
    return await OverviewService(db, settings).get_overview(ctx.tenant_id, utcnow())


@router.post(
    "/payment-methods/direct-debit",
    response_model=DirectDebitMandateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_direct_debit_mandate(
    mandate_data: DirectDebitMandateCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: BillingContext = Depends(require_tenant_manager),
) -> DirectDebitMandateResponse:
    """
    Submit or replace the tenant's direct-debit mandate.

    - **holder_name**: Account holder name
    - **tax_id**: Holder tax identifier
    - **account_number**: 22-digit bank account number (check digits validated)
    - **consent_accepted**: The mandate text must be accepted

    The account number is stored encrypted and only returned masked.
    """
    result = await MandateService(db, settings).upsert_direct_debit_mandate(
        ctx,
        holder_name=mandate_data.holder_name,
        tax_id=mandate_data.tax_id,
        account_number=mandate_data.account_number,
        consent_ip=_client_ip(request),
        consent_accepted=mandate_data.consent_accepted,
        consent_version=mandate_data.consent_version,
    )
    return DirectDebitMandateResponse(
        subscription_id=result.subscription.id,
        next_anchor_date=result.subscription.next_anchor_date,
        payment_method=PaymentMethodView.model_validate(result.payment_method),
        mandate=MandateView.model_validate(result.mandate),
        created=result.created,
    )


@router.patch("/payment-methods/direct-debit", response_model=MandateView)
async def update_direct_debit_mandate_status(
    update: MandateStatusUpdate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: BillingContext = Depends(require_platform_admin),
) -> MandateView:
    """
    Apply a mandate status reported by the bank (platform admins only).

    Identify the mandate by **mandate_id** or by **tenant_id**.
    """
    service = MandateService(db, settings)
    mandate_id = update.mandate_id
    if mandate_id is None:
        if update.tenant_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="mandate_id or tenant_id is required")
        mandate = await service.get_tenant_mandate(update.tenant_id)
        if mandate is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Tenant {update.tenant_id} has no direct-debit mandate",
            )
        mandate_id = mandate.id

    mandate = await service.transition_mandate_status(
        mandate_id,
        update.status,
        actor_id=ctx.actor_id,
        reason_code=update.reason_code,
        reason_text=update.reason_text,
        bank_reference=update.bank_reference,
    )
    return MandateView.model_validate(mandate)
