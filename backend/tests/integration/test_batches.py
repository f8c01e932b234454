"""Integration tests for direct-debit presentment and response import."""
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.config import Settings
from agency_billing.errors import ControlTotalsMismatch, InvalidStateTransition, NotFound, ProviderError
from agency_billing.models.attempt import Attempt, AttemptStatus
from agency_billing.models.batch import BatchDirection, BatchItem, BatchItemStatus, BatchStatus
from agency_billing.models.charge import ChargeStatus, ReconciliationStatus
from agency_billing.models.cycle import CycleStatus
from agency_billing.repositories.events import BillingEventRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository
from agency_billing.services.batch_service import BatchService
from agency_billing.services.cycle_service import CycleService
from agency_billing.storage.artifact_store import LocalArtifactStore, StorageProvider, sha256_of
from utils.factories import build_galicia_response, create_billed_tenant, create_mandate, utc

pytestmark = pytest.mark.integration

TENANT_ID = 42
ANCHOR = utc(2024, 4, 10, 3)
AMOUNT = Decimal("108900.00")


class FailingStore:
    """Artifact store whose writes always fail."""

    provider = StorageProvider.LOCAL

    async def put(self, key, data, content_type):
        raise OSError("disk full")

    async def get(self, key):
        raise OSError("disk full")


async def _attempts(db: AsyncSession, charge_id) -> list[Attempt]:
    result = await db.execute(select(Attempt).where(Attempt.charge_id == charge_id).order_by(Attempt.attempt_no))
    return list(result.scalars().all())


async def _present(db: AsyncSession, settings: Settings, store: LocalArtifactStore, day: date = date(2024, 4, 10)):
    return await BatchService(db, settings, store).create_presentment_batch(day, actor_id="admin-1")


@pytest.mark.asyncio
async def test_presentment_builds_ready_batch(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    """Test that due attempts are written to a stored file and marked PROCESSING."""
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)

    result = await _present(db_session, settings, artifact_store)
    batch = result.batch

    assert result.attempt_count == 1
    assert batch.status == BatchStatus.READY
    assert batch.direction == BatchDirection.OUTBOUND
    assert batch.record_count == 1
    assert batch.amount_total == AMOUNT
    assert batch.storage_key.startswith("billing/direct-debit/outbound/2024-04-10/")
    assert result.file_name.startswith("galicia_pd_v1_0001_20240410")

    attempts = await _attempts(db_session, billed.charge.id)
    assert attempts[0].status == AttemptStatus.PROCESSING
    assert attempts[0].external_reference == f"AT-{attempts[0].id}"
    assert [a.status for a in attempts[1:]] == [AttemptStatus.PENDING, AttemptStatus.PENDING]
    assert billed.charge.status == ChargeStatus.PRESENTED

    service = BatchService(db_session, settings, artifact_store)
    downloaded = await service.download_batch_file(batch.id)
    assert downloaded.file_name == result.file_name
    assert sha256_of(downloaded.content) == batch.sha256
    assert downloaded.content.startswith(b"H|GALICIA_PD|")
    assert f"AT-{attempts[0].id}".encode() in downloaded.content

    assert await BillingEventRepository(db_session).count(TENANT_ID, "PD_BATCH_OUTBOUND_CREATED") == 1


@pytest.mark.asyncio
async def test_nothing_due_gives_empty_batch(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    await _present(db_session, settings, artifact_store)

    # The only due attempt is already PROCESSING
    again = await _present(db_session, settings, artifact_store)

    assert again.batch.status == BatchStatus.EMPTY
    assert again.file_name is None
    assert again.batch.storage_key is None

    with pytest.raises(InvalidStateTransition):
        await BatchService(db_session, settings, artifact_store).import_response_batch(
            again.batch.id, "resp.txt", b"H|x\n"
        )


@pytest.mark.asyncio
async def test_pending_mandate_is_not_presented(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR, activate=False)

    result = await _present(db_session, settings, artifact_store)

    assert result.batch.status == BatchStatus.EMPTY
    assert billed.charge.status == ChargeStatus.PENDING


@pytest.mark.asyncio
async def test_import_paid_settles_charge_and_cancels_retries(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    """Test that a PAID row settles the charge, cancels later retries and closes the cycle."""
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    outbound = (await _present(db_session, settings, artifact_store)).batch
    first = (await _attempts(db_session, billed.charge.id))[0]
    content = build_galicia_response([(first.external_reference, "00", AMOUNT)], date(2024, 4, 11))
    service = BatchService(db_session, settings, artifact_store)

    summary = await service.import_response_batch(outbound.id, "resp_20240411.txt", content, actor_id="admin-1")

    assert not summary.duplicate
    assert (summary.matched_rows, summary.paid, summary.rejected, summary.error_rows) == (1, 1, 0, 0)

    charge = billed.charge
    assert charge.status == ChargeStatus.PAID
    assert charge.amount_paid == AMOUNT
    assert charge.paid_reference == "TR000001"
    assert charge.paid_via_channel == "DIRECT_DEBIT"
    assert charge.reconciliation_status == ReconciliationStatus.MATCHED

    await db_session.refresh(billed.cycle)
    assert billed.cycle.status == CycleStatus.PAID
    assert outbound.status == BatchStatus.RECONCILED

    attempts = await _attempts(db_session, charge.id)
    for attempt in attempts:
        await db_session.refresh(attempt)
    assert [a.status for a in attempts] == [AttemptStatus.PAID, AttemptStatus.CANCELED, AttemptStatus.CANCELED]
    assert attempts[0].paid_reference == "TR000001"

    inbound = await service.batches.get(summary.inbound_batch_id)
    assert inbound.status == BatchStatus.PROCESSED
    assert inbound.parent_batch_id == outbound.id
    assert inbound.total_paid_rows == 1
    assert await BillingEventRepository(db_session).count(TENANT_ID, "ATTEMPT_MARKED_PAID") == 1

    # The same bytes again are reported as a duplicate and change nothing
    duplicate = await service.import_response_batch(outbound.id, "resp_20240411.txt", content)
    assert duplicate.duplicate
    assert duplicate.inbound_batch_id == summary.inbound_batch_id
    assert duplicate.paid == 1
    assert len(await service.list_batches(BatchDirection.INBOUND)) == 1
    assert await BillingEventRepository(db_session).count(TENANT_ID, "ATTEMPT_MARKED_PAID") == 1


@pytest.mark.asyncio
async def test_import_rejected_then_retry_is_presented(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    """Test that a rejection leaves the next retry due on its own business day."""
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    outbound = (await _present(db_session, settings, artifact_store)).batch
    first = (await _attempts(db_session, billed.charge.id))[0]
    content = build_galicia_response([(first.external_reference, "51", AMOUNT)], date(2024, 4, 11))

    summary = await BatchService(db_session, settings, artifact_store).import_response_batch(
        outbound.id, "resp.txt", content
    )

    assert (summary.matched_rows, summary.paid, summary.rejected) == (1, 0, 1)
    assert first.status == AttemptStatus.REJECTED
    assert first.rejection_code == "51"
    assert first.rejection_reason == "FONDOS INSUFICIENTES"
    assert billed.charge.status == ChargeStatus.REJECTED
    assert billed.charge.reconciliation_status == ReconciliationStatus.UNMATCHED
    assert outbound.status == BatchStatus.READY
    assert await BillingEventRepository(db_session).count(TENANT_ID, "ATTEMPT_MARKED_REJECTED") == 1

    # Nothing new is due the next day
    assert (await _present(db_session, settings, artifact_store, date(2024, 4, 11))).batch.status == BatchStatus.EMPTY

    retry = await _present(db_session, settings, artifact_store, date(2024, 4, 12))
    attempts = await _attempts(db_session, billed.charge.id)
    assert retry.batch.status == BatchStatus.READY
    assert retry.attempt_count == 1
    assert attempts[1].status == AttemptStatus.PROCESSING
    assert billed.charge.status == ChargeStatus.PRESENTED


@pytest.mark.asyncio
async def test_totals_mismatch_rejects_file_without_touching_rows(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    outbound = (await _present(db_session, settings, artifact_store)).batch
    first = (await _attempts(db_session, billed.charge.id))[0]
    content = build_galicia_response(
        [(first.external_reference, "00", AMOUNT)], date(2024, 4, 11), declared_count=2, declared_amount=Decimal("1")
    )
    service = BatchService(db_session, settings, artifact_store)

    with pytest.raises(ControlTotalsMismatch) as exc_info:
        await service.import_response_batch(outbound.id, "resp.txt", content)

    assert len(exc_info.value.errors) == 2
    assert billed.charge.status == ChargeStatus.PRESENTED
    assert first.status == AttemptStatus.PROCESSING

    inbound = await service.list_batches(BatchDirection.INBOUND)
    assert [b.status for b in inbound] == [BatchStatus.REJECTED]
    assert str(inbound[0].id) == exc_info.value.batch_id


@pytest.mark.asyncio
async def test_unmatched_rows_are_counted_as_errors(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    outbound = (await _present(db_session, settings, artifact_store)).batch
    first = (await _attempts(db_session, billed.charge.id))[0]
    content = build_galicia_response(
        [(first.external_reference, "00", AMOUNT), ("AT-unknown", "00", Decimal("10.00"))], date(2024, 4, 11)
    )

    summary = await BatchService(db_session, settings, artifact_store).import_response_batch(
        outbound.id, "resp.txt", content
    )

    assert (summary.matched_rows, summary.paid, summary.error_rows) == (1, 1, 1)
    items = await db_session.execute(
        select(BatchItem).where(BatchItem.batch_id == summary.inbound_batch_id).order_by(BatchItem.line_no)
    )
    assert [item.status for item in items.scalars().all()] == [BatchItemStatus.PAID, BatchItemStatus.ERROR]


@pytest.mark.asyncio
async def test_import_for_unknown_batch(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    with pytest.raises(NotFound):
        await BatchService(db_session, settings, artifact_store).import_response_batch(uuid4(), "resp.txt", b"")


@pytest.mark.asyncio
async def test_storage_failure_reverts_presentment(db_session: AsyncSession, settings: Settings) -> None:
    """Test that a failed upload leaves the batch FAILED and the attempts due again."""
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    service = BatchService(db_session, settings, FailingStore())

    with pytest.raises(ProviderError):
        await service.create_presentment_batch(date(2024, 4, 10))

    attempts = await _attempts(db_session, billed.charge.id)
    for attempt in attempts:
        await db_session.refresh(attempt)
    assert attempts[0].status == AttemptStatus.PENDING
    assert billed.charge.status == ChargeStatus.PENDING

    batches = await service.list_batches(BatchDirection.OUTBOUND)
    assert [b.status for b in batches] == [BatchStatus.FAILED]
    assert batches[0].meta["error"] == "disk full"


@pytest.mark.asyncio
async def test_simultaneous_import_of_same_file_is_a_duplicate(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that an import which misses the earlier file still ends as a duplicate."""
    billed = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)
    outbound = (await _present(db_session, settings, artifact_store)).batch
    first = (await _attempts(db_session, billed.charge.id))[0]
    content = build_galicia_response([(first.external_reference, "00", AMOUNT)], date(2024, 4, 11))
    service = BatchService(db_session, settings, artifact_store)
    summary = await service.import_response_batch(outbound.id, "resp.txt", content)

    # The first lookup runs before the other import has committed
    lookup = service.batches.find_inbound_by_sha
    calls = []

    async def lookup_before_commit(parent_batch_id, sha256):
        calls.append(sha256)
        if len(calls) == 1:
            return None
        return await lookup(parent_batch_id, sha256)

    monkeypatch.setattr(service.batches, "find_inbound_by_sha", lookup_before_commit)

    duplicate = await service.import_response_batch(outbound.id, "resp.txt", content)

    assert len(calls) == 2
    assert duplicate.duplicate
    assert duplicate.inbound_batch_id == summary.inbound_batch_id
    assert (duplicate.matched_rows, duplicate.paid) == (1, 1)

    inbound = {b.status: b for b in await service.list_batches(BatchDirection.INBOUND)}
    assert set(inbound) == {BatchStatus.PROCESSED, BatchStatus.FAILED}
    assert inbound[BatchStatus.PROCESSED].id == summary.inbound_batch_id
    assert inbound[BatchStatus.FAILED].meta["duplicate_of"] == str(summary.inbound_batch_id)

    rows = await db_session.execute(select(BatchItem).where(BatchItem.batch_id == inbound[BatchStatus.FAILED].id))
    assert rows.scalars().all() == []
    await db_session.refresh(billed.charge)
    assert billed.charge.status == ChargeStatus.PAID
    assert billed.charge.amount_paid == AMOUNT
    assert await BillingEventRepository(db_session).count(TENANT_ID, "ATTEMPT_MARKED_PAID") == 1


@pytest.mark.asyncio
async def test_attempts_are_due_on_the_tenant_local_day(
    db_session: AsyncSession, settings: Settings, artifact_store: LocalArtifactStore
) -> None:
    """Test that a tenant ahead of the bank timezone is presented on its own anchor day."""
    tokyo_tenant = TENANT_ID + 1
    await create_mandate(db_session, settings, tokyo_tenant, now=ANCHOR)
    subscription = await SubscriptionRepository(db_session).get_by_tenant(tokyo_tenant)
    subscription.timezone = "Asia/Tokyo"
    await db_session.flush()
    # Midnight of 2024-04-10 in Tokyo is still 2024-04-09 in Buenos Aires
    tokyo = await CycleService(db_session, settings).run_anchor(
        tokyo_tenant, utc(2024, 4, 9, 15), fx_rate=Decimal("1000"), base_amount_usd=Decimal("100.00")
    )
    assert tokyo.attempts[0].scheduled_for == utc(2024, 4, 9, 15)

    early = await _present(db_session, settings, artifact_store, date(2024, 4, 9))
    assert early.batch.status == BatchStatus.EMPTY

    result = await _present(db_session, settings, artifact_store, date(2024, 4, 10))
    assert result.attempt_count == 1
    assert tokyo.attempts[0].status == AttemptStatus.PROCESSING

    content = (await BatchService(db_session, settings, artifact_store).download_batch_file(result.batch.id)).content
    detail = next(line for line in content.decode().splitlines() if line.startswith("D|"))
    assert "|20240410|" in detail
