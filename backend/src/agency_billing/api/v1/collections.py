"""Admin collection endpoints: direct-debit batches and fallback intents."""
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.adapters.fallback.registry import FallbackProviderRegistry
from agency_billing.api.deps import (
    get_artifact_store,
    get_db,
    get_fallback_registry,
    get_settings,
    require_platform_admin,
)
from agency_billing.auth.context import BillingContext
from agency_billing.config import Settings
from agency_billing.errors import ControlTotalsMismatch, ProviderError
from agency_billing.models.batch import BatchDirection
from agency_billing.schemas.batch import Batch, ImportSummary, PresentmentBatchCreate
from agency_billing.schemas.fallback import FallbackIntent, FallbackIntentCreate
from agency_billing.services.batch_service import BatchService
from agency_billing.services.fallback_service import FallbackService
from agency_billing.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/collections", tags=["Collections"])


def get_batch_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    store: ArtifactStore = Depends(get_artifact_store),
) -> BatchService:
    return BatchService(db, settings, store)


def get_fallback_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    registry: FallbackProviderRegistry = Depends(get_fallback_registry),
) -> FallbackService:
    return FallbackService(db, settings, registry)


@router.get("/direct-debit/batches", response_model=list[Batch])
async def list_batches(
    direction: Optional[BatchDirection] = Query(None, description="Filter by direction"),
    service: BatchService = Depends(get_batch_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> list[Batch]:
    """List recent presentment and response batches, newest business day first."""
    return await service.list_batches(direction)


@router.post("/direct-debit/batches", response_model=Batch, status_code=status.HTTP_201_CREATED)
async def create_presentment_batch(
    batch_data: PresentmentBatchCreate,
    db: AsyncSession = Depends(get_db),
    service: BatchService = Depends(get_batch_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> Batch:
    """
    Build the presentment file for a business day.

    Pending direct-debit attempts due by that day are presented. The batch is
    EMPTY when nothing is due. A storage failure leaves the batch FAILED with
    its attempts back in PENDING, and answers 502.
    """
    try:
        result = await service.create_presentment_batch(batch_data.business_date, actor_id=ctx.actor_id)
    except ProviderError:
        # keep the FAILED batch and the reverted attempts
        await db.commit()
        raise
    return result.batch


@router.post("/direct-debit/batches/{batch_id}/import-response", response_model=ImportSummary)
async def import_response(
    batch_id: UUID,
    file: UploadFile = File(..., description="Bank response file"),
    db: AsyncSession = Depends(get_db),
    service: BatchService = Depends(get_batch_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> ImportSummary:
    """
    Import the bank's response file for an outbound batch.

    Uploading the same file again returns the first import's summary. A file
    whose control totals do not match is recorded as REJECTED and answers 422
    with every discrepancy.
    """
    content = await file.read()
    try:
        return await service.import_response_batch(
            batch_id, file.filename or "response.txt", content, actor_id=ctx.actor_id
        )
    except (ControlTotalsMismatch, ProviderError):
        # keep the REJECTED or FAILED inbound batch for the audit trail
        await db.commit()
        raise


@router.get("/direct-debit/batches/{batch_id}/file")
async def download_batch_file(
    batch_id: UUID,
    service: BatchService = Depends(get_batch_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> Response:
    """Download a stored batch file. Its SHA-256 is verified first."""
    batch_file = await service.download_batch_file(batch_id)
    return Response(
        content=batch_file.content,
        media_type=batch_file.content_type,
        headers={"Content-Disposition": f'attachment; filename="{batch_file.file_name}"'},
    )


@router.post("/fallback/{charge_id}", response_model=FallbackIntent)
async def create_fallback_intent(
    charge_id: UUID,
    response: Response,
    intent_data: Optional[FallbackIntentCreate] = None,
    service: FallbackService = Depends(get_fallback_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> FallbackIntent:
    """
    Create an online payment intent for an unpaid charge.

    Answers 201 when created and 200 when an existing intent is returned.
    """
    intent_data = intent_data or FallbackIntentCreate()
    result = await service.create_intent_for_charge(
        charge_id,
        provider_key=intent_data.provider,
        idempotency_key=intent_data.idempotency_key,
        actor_id=ctx.actor_id,
    )
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return result.intent


@router.post("/fallback/intents/{intent_id}/sync", response_model=FallbackIntent)
async def sync_fallback_intent(
    intent_id: UUID,
    service: FallbackService = Depends(get_fallback_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> FallbackIntent:
    """Refresh an intent from its provider; a paid intent settles the charge."""
    return await service.sync_intent(intent_id, actor_id=ctx.actor_id)


@router.post("/fallback/intents/{intent_id}/cancel", response_model=FallbackIntent)
async def cancel_fallback_intent(
    intent_id: UUID,
    service: FallbackService = Depends(get_fallback_service),
    ctx: BillingContext = Depends(require_platform_admin),
) -> FallbackIntent:
    return await service.cancel_intent(intent_id, actor_id=ctx.actor_id)
