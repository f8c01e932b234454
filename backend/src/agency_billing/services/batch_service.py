"""Batch service for direct-debit presentment and response files."""
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal
from typing import NamedTuple, Optional, Union
from uuid import UUID

import structlog
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.adapters.bank.base import (
    DUPLICATE_ROW_HASH,
    AdapterConfig,
    BankFileAdapter,
    BatchMeta,
    ParsedInboundRow,
    PresentmentRow,
    canonical_row,
    sha256_hex,
)
from agency_billing.adapters.bank.registry import get_bank_adapter
from agency_billing.adapters.bank.result_codes import BankResultStatus
from agency_billing.config import Settings
from agency_billing.core.dates import local_date, normalize_local_day, start_of_local_day
from agency_billing.core.pricing import round2
from agency_billing.errors import ControlTotalsMismatch, InvalidStateTransition, NotFound, ProviderError
from agency_billing.metrics import batch_rows_total, batches_built_total
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.base import utcnow
from agency_billing.models.batch import BatchDirection, BatchItem, BatchItemStatus, BatchStatus, PresentmentBatch
from agency_billing.models.charge import Charge, ChargeStatus, ReconciliationStatus
from agency_billing.models.cycle import CycleStatus
from agency_billing.repositories.attempts import AttemptRepository
from agency_billing.repositories.batches import BatchRepository
from agency_billing.repositories.charges import ChargeRepository
from agency_billing.schemas.batch import ImportSummary
from agency_billing.storage.artifact_store import ArtifactStore, sha256_of
from agency_billing.utils.audit import log_billing_event
from agency_billing.utils.sanitize import sanitize_provider_message

logger = structlog.get_logger(__name__)

STORAGE_ERRORS = (OSError, BotoCoreError, ClientError)
PRESENTABLE_CHARGE_STATUSES = (ChargeStatus.PENDING, ChargeStatus.REJECTED, ChargeStatus.ERROR)
CANCELED_BY_PAYMENT_NOTE = "Canceled after a successful earlier attempt"


class PresentmentResult(NamedTuple):
    batch: PresentmentBatch
    file_name: Optional[str]
    attempt_count: int


class BatchFile(NamedTuple):
    file_name: str
    content: bytes
    content_type: str


def reference_row_hash(external_reference: str) -> str:
    """Row hash recorded for a presented line, derived from its reference only."""
    return sha256_hex(canonical_row({"external_reference": external_reference}))


def build_storage_key(direction: BatchDirection, batch_id: UUID, file_name: str, business_day: date) -> str:
    """Storage key ``billing/direct-debit/<direction>/<day>/batch-<id>-<safe name>``."""
    ascii_name = unicodedata.normalize("NFKD", file_name or "").encode("ascii", "ignore").decode("ascii")
    clean = re.sub(r"_+", "_", re.sub(r"[^\w.-]+", "_", ascii_name)).strip("_")[:120]
    safe_name = clean or "batch.txt"
    return f"billing/direct-debit/{direction.value.lower()}/{business_day.isoformat()}/batch-{batch_id}-{safe_name}"


class BatchService:
    """
    Service building presentment files and reconciling bank responses.

    All writes happen in the caller's transaction. Failures that leave a
    record behind (FAILED or REJECTED batches) are raised after the record is
    flushed; the caller decides whether to commit it.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        store: ArtifactStore,
        adapter: Optional[BankFileAdapter] = None,
    ):
        """Initialize batch service."""
        self.db = db
        self.settings = settings
        self.store = store
        self.adapter = adapter or get_bank_adapter(settings.pd_adapter)
        self.batches = BatchRepository(db)
        self.attempts = AttemptRepository(db)
        self.charges = ChargeRepository(db)

    def _business_date(self, business_date: Union[date, datetime, None]) -> date:
        """Calendar date of the presentment in the bank's (platform default) timezone."""
        tz = self.settings.timezone_default
        if business_date is None:
            return local_date(utcnow(), tz)
        if isinstance(business_date, datetime):
            return local_date(business_date, tz)
        return business_date

    async def create_presentment_batch(
        self,
        business_date: Union[date, datetime, None] = None,
        actor_id: Optional[str] = None,
    ) -> PresentmentResult:
        """
        Build and store the outbound presentment file for a business day.

        Args:
            business_date: Business day (tenant calendar); defaults to today
            actor_id: User or job building the batch

        Returns:
            The batch (READY, or EMPTY when nothing is due) and its file name

        Raises:
            ControlTotalsMismatch: If the built file fails its own control totals
            ProviderError: If the file could not be stored (batch left FAILED)
        """
        day = self._business_date(business_date)
        business_day = start_of_local_day(day, self.settings.timezone_default)
        due = await self.attempts.due_for_presentment(
            day, self.settings.timezone_default, self.settings.pd_require_active_mandate
        )

        batch = PresentmentBatch(
            direction=BatchDirection.OUTBOUND,
            channel=AttemptChannel.DIRECT_DEBIT.value,
            adapter=self.adapter.name,
            business_date=business_day,
            status=BatchStatus.CREATING if due else BatchStatus.EMPTY,
            meta={"require_active_mandate": self.settings.pd_require_active_mandate},
        )
        await self.batches.add(batch)

        if not due:
            batches_built_total.labels(direction="outbound", status="empty").inc()
            logger.info("pd_batch_outbound_empty", batch_id=str(batch.id), business_date=day.isoformat())
            return PresentmentResult(batch, None, 0)

        rows = []
        for attempt, charge, method, mandate, tz_name in due:
            rows.append(
                PresentmentRow(
                    attempt_id=str(attempt.id),
                    charge_id=str(charge.id),
                    tenant_id=charge.tenant_id,
                    external_reference=(attempt.external_reference or "").strip() or f"AT-{attempt.id}",
                    amount=round2(charge.amount_due),
                    scheduled_for=attempt.scheduled_for,
                    timezone=tz_name,
                    holder_name=method.holder_name if method else None,
                    holder_tax_id=method.holder_tax_id if method else None,
                    account_last4=mandate.account_last4 if mandate else None,
                )
            )

        built = self.adapter.build_outbound_file(
            BatchMeta(batch_id=str(batch.id), business_date=day),
            rows,
            AdapterConfig(company_code=self.settings.pd_company_code, timezone=self.settings.timezone_default),
        )
        validation = self.adapter.validate_outbound_control_totals(built.control_totals, rows)
        if not validation.ok:
            raise ControlTotalsMismatch(validation.errors, batch_id=str(batch.id))

        now = utcnow()
        previous_charge_status = {}
        for (attempt, charge, *_), row in zip(due, rows):
            attempt.external_reference = row.external_reference
            attempt.status = AttemptStatus.PROCESSING
            if charge.status in PRESENTABLE_CHARGE_STATUSES:
                previous_charge_status.setdefault(charge.id, (charge, charge.status))
                charge.status = ChargeStatus.PRESENTED
        for line_no, (row, (attempt, charge, *_)) in enumerate(zip(rows, due), start=2):
            self.db.add(
                BatchItem(
                    batch_id=batch.id,
                    line_no=line_no,
                    attempt_id=attempt.id,
                    charge_id=charge.id,
                    external_reference=row.external_reference,
                    row_hash=reference_row_hash(row.external_reference),
                    amount=row.amount,
                    status=BatchItemStatus.PRESENTED,
                    row_payload=row.model_dump(mode="json"),
                )
            )

        batch.record_count = built.control_totals.record_count
        batch.amount_total = built.control_totals.amount_total
        batch.checksum = built.control_totals.checksum
        await self.db.flush()

        content = built.file_bytes
        storage_key = build_storage_key(BatchDirection.OUTBOUND, batch.id, built.file_name, day)
        try:
            stored = await self.store.put(storage_key, content, built.content_type)
        except STORAGE_ERRORS as e:
            message = sanitize_provider_message(e)
            await self.attempts.revert_processing([entry.attempt.id for entry in due], now)
            for charge, status in previous_charge_status.values():
                charge.status = status
            batch.status = BatchStatus.FAILED
            batch.meta = {**(batch.meta or {}), "error": message}
            await self.db.flush()
            batches_built_total.labels(direction="outbound", status="failed").inc()
            logger.error("pd_batch_upload_failed", batch_id=str(batch.id), error=message)
            raise ProviderError("artifact_store", message) from e

        batch.status = BatchStatus.READY
        batch.storage_key = stored.key
        batch.sha256 = stored.sha256
        batch.original_file_name = built.file_name
        await self.db.flush()

        for tenant_id in sorted({row.tenant_id for row in rows}):
            await log_billing_event(
                self.db,
                "PD_BATCH_OUTBOUND_CREATED",
                tenant_id=tenant_id,
                payload={
                    "batch_id": batch.id,
                    "business_date": day,
                    "record_count": batch.record_count,
                    "amount_total": batch.amount_total,
                    "adapter": self.adapter.name,
                },
                actor_id=actor_id,
            )

        batches_built_total.labels(direction="outbound", status="ready").inc()
        logger.info(
            "pd_batch_outbound_created",
            batch_id=str(batch.id),
            business_date=day.isoformat(),
            record_count=batch.record_count,
            adapter=self.adapter.name,
        )
        return PresentmentResult(batch, built.file_name, len(rows))

    async def import_response_batch(
        self,
        outbound_batch_id: UUID,
        file_name: str,
        content: bytes,
        actor_id: Optional[str] = None,
    ) -> ImportSummary:
        """
        Import a bank response file for an outbound batch.

        Importing the same bytes again returns the earlier summary without
        touching any row. Control totals are checked before anything changes.

        Args:
            outbound_batch_id: Outbound batch the file answers
            file_name: Uploaded file name
            content: Raw file bytes
            actor_id: User importing the file

        Returns:
            Counts of matched, paid, rejected and error rows

        Raises:
            NotFound: If the outbound batch does not exist
            FileStructureError: If the file has no header or trailer
            ControlTotalsMismatch: If the declared totals do not match the rows
                (the inbound batch is recorded as REJECTED)
            ProviderError: If the file could not be stored
        """
        # Serializes imports for the same outbound batch
        outbound = await self.batches.get_for_update(outbound_batch_id)
        if outbound is None or outbound.direction != BatchDirection.OUTBOUND:
            raise NotFound(f"Outbound batch {outbound_batch_id} not found")
        if outbound.status in (BatchStatus.EMPTY, BatchStatus.FAILED, BatchStatus.CREATING):
            raise InvalidStateTransition(f"Batch {outbound_batch_id} was never presented")

        outbound_id = outbound.id
        inbound_sha = sha256_of(content)
        previous = await self.batches.find_inbound_by_sha(outbound_id, inbound_sha)
        if previous is not None:
            return self._duplicate_summary(outbound_id, previous)

        parsed = self.adapter.parse_inbound_file(content)
        validation = self.adapter.validate_inbound_control_totals(parsed)
        totals_errors = [error for error in validation.errors if not error.startswith(DUPLICATE_ROW_HASH)]

        now = utcnow()
        declared = parsed.declared_totals or parsed.control_totals
        inbound = PresentmentBatch(
            parent_batch_id=outbound.id,
            direction=BatchDirection.INBOUND,
            channel=outbound.channel,
            adapter=self.adapter.name,
            business_date=normalize_local_day(now, self.settings.timezone_default),
            status=BatchStatus.PROCESSING,
            record_count=declared.record_count,
            amount_total=declared.amount_total,
            checksum=parsed.control_totals.checksum,
            original_file_name=file_name,
            meta={"parse_warnings": parsed.parse_warnings},
        )
        await self.batches.add(inbound)

        if totals_errors:
            inbound.status = BatchStatus.REJECTED
            inbound.sha256 = inbound_sha
            inbound.meta = {**inbound.meta, "errors": totals_errors}
            await self.db.flush()
            batches_built_total.labels(direction="inbound", status="rejected").inc()
            logger.warning(
                "pd_batch_inbound_rejected",
                outbound_batch_id=str(outbound.id),
                inbound_batch_id=str(inbound.id),
                error_count=len(totals_errors),
            )
            raise ControlTotalsMismatch(totals_errors, batch_id=str(inbound.id))

        storage_key = build_storage_key(
            BatchDirection.INBOUND, inbound.id, file_name, local_date(now, self.settings.timezone_default)
        )
        try:
            stored = await self.store.put(storage_key, content, self.adapter.content_type)
        except STORAGE_ERRORS as e:
            message = sanitize_provider_message(e)
            inbound.status = BatchStatus.FAILED
            inbound.meta = {**inbound.meta, "error": message}
            await self.db.flush()
            batches_built_total.labels(direction="inbound", status="failed").inc()
            logger.error("pd_batch_upload_failed", batch_id=str(inbound.id), error=message)
            raise ProviderError("artifact_store", message) from e

        try:
            async with self.db.begin_nested():
                summary = await self._apply_rows(outbound, inbound, parsed.rows, actor_id)
                summary.parse_warnings = parsed.parse_warnings

                inbound.status = BatchStatus.PROCESSED
                inbound.storage_key = stored.key
                inbound.sha256 = inbound_sha
                inbound.total_paid_rows = summary.paid
                inbound.total_rejected_rows = summary.rejected
                inbound.total_error_rows = summary.error_rows
                inbound.meta = {**inbound.meta, "matched_rows": summary.matched_rows}
                if summary.paid > 0:
                    outbound.status = BatchStatus.RECONCILED
                await self.db.flush()
        except IntegrityError:
            # Another import of the same bytes finished first; its rows stand
            previous = await self.batches.find_inbound_by_sha(outbound_id, inbound_sha)
            if previous is None:
                raise
            await self.db.refresh(inbound)
            inbound.status = BatchStatus.FAILED
            inbound.storage_key = stored.key
            inbound.meta = {**(inbound.meta or {}), "error": "duplicate import", "duplicate_of": str(previous.id)}
            await self.db.flush()
            return self._duplicate_summary(outbound_id, previous)

        batches_built_total.labels(direction="inbound", status="processed").inc()
        logger.info(
            "pd_batch_inbound_imported",
            outbound_batch_id=str(outbound.id),
            inbound_batch_id=str(inbound.id),
            matched_rows=summary.matched_rows,
            paid=summary.paid,
            rejected=summary.rejected,
            error_rows=summary.error_rows,
        )
        return summary

    async def _apply_rows(
        self,
        outbound: PresentmentBatch,
        inbound: PresentmentBatch,
        rows: list[ParsedInboundRow],
        actor_id: Optional[str],
    ) -> ImportSummary:
        items = await self.batches.list_items(outbound.id)
        by_reference = {item.external_reference: item for item in items if item.external_reference}
        by_hash = {item.row_hash: item for item in items}

        summary = ImportSummary(inbound_batch_id=inbound.id)
        seen_hashes: set[str] = set()
        touched_tenants: set[int] = set()

        for row in rows:
            match = None
            if row.row_hash not in seen_hashes:
                match = (
                    (by_reference.get(row.external_reference) if row.external_reference else None)
                    or by_hash.get(row.row_hash)
                    or (by_hash.get(reference_row_hash(row.external_reference)) if row.external_reference else None)
                )
            duplicate = row.row_hash in seen_hashes
            seen_hashes.add(row.row_hash)

            if match is None or match.attempt_id is None or match.charge_id is None:
                reason = "Duplicate response row" if duplicate else "Row does not match a presented attempt"
                await self._record_row(inbound, row, BatchItemStatus.ERROR, message=row.bank_message or reason)
                summary.error_rows += 1
                continue

            attempt = await self.attempts.get(match.attempt_id)
            charge = await self.charges.get(match.charge_id)
            if attempt is None or charge is None:
                await self._record_row(
                    inbound, row, BatchItemStatus.ERROR, match=match, message="Attempt or charge not found"
                )
                summary.error_rows += 1
                continue

            summary.matched_rows += 1
            touched_tenants.add(charge.tenant_id)
            processed_at = utcnow()

            if row.mapped_status == BankResultStatus.PAID:
                amount = row.amount if row.amount is not None else round2(charge.amount_due)
                if charge.is_paid and attempt.status != AttemptStatus.PAID:
                    await self._record_double_collection(
                        outbound, inbound, match, attempt, charge, row, amount, processed_at, actor_id
                    )
                    summary.error_rows += 1
                    continue
                if attempt.status != AttemptStatus.PAID:
                    attempt.status = AttemptStatus.PAID
                    attempt.processed_at = processed_at
                    attempt.paid_reference = row.paid_reference
                    attempt.rejection_code = None
                    attempt.rejection_reason = None
                if not charge.is_paid:
                    charge.status = ChargeStatus.PAID
                    charge.amount_paid = amount
                    charge.paid_currency = charge.currency
                    charge.paid_at = processed_at
                    charge.paid_reference = row.paid_reference
                    charge.paid_via_channel = AttemptChannel.DIRECT_DEBIT.value
                    charge.reconciliation_status = ReconciliationStatus.MATCHED
                await self.db.flush()
                await self.attempts.cancel_later_pending(
                    charge.id, attempt.attempt_no, processed_at, CANCELED_BY_PAYMENT_NOTE
                )
                if charge.cycle_id:
                    cycle = await self.charges.get_cycle(charge.cycle_id)
                    if cycle is not None and cycle.status != CycleStatus.PAID:
                        cycle.status = CycleStatus.PAID

                self._update_item(match, BatchItemStatus.PAID, row, processed_at)
                await self._record_row(inbound, row, BatchItemStatus.PAID, match=match, amount=amount)
                await log_billing_event(
                    self.db,
                    "ATTEMPT_MARKED_PAID",
                    tenant_id=charge.tenant_id,
                    payload={
                        "outbound_batch_id": outbound.id,
                        "inbound_batch_id": inbound.id,
                        "attempt_id": attempt.id,
                        "charge_id": charge.id,
                        "paid_reference": row.paid_reference,
                        "amount": amount,
                    },
                    actor_id=actor_id,
                )
                summary.paid += 1
                continue

            if row.mapped_status == BankResultStatus.REJECTED:
                if attempt.status not in (AttemptStatus.PAID, AttemptStatus.REJECTED):
                    attempt.status = AttemptStatus.REJECTED
                    attempt.processed_at = processed_at
                    attempt.rejection_code = row.bank_code
                    attempt.rejection_reason = row.bank_message
                if not charge.is_paid:
                    charge.status = ChargeStatus.REJECTED
                    charge.reconciliation_status = ReconciliationStatus.UNMATCHED

                self._update_item(match, BatchItemStatus.REJECTED, row, processed_at)
                await self._record_row(inbound, row, BatchItemStatus.REJECTED, match=match)
                await log_billing_event(
                    self.db,
                    "ATTEMPT_MARKED_REJECTED",
                    tenant_id=charge.tenant_id,
                    payload={
                        "outbound_batch_id": outbound.id,
                        "inbound_batch_id": inbound.id,
                        "attempt_id": attempt.id,
                        "charge_id": charge.id,
                        "rejection_code": row.bank_code,
                        "detailed_reason": row.mapped_detailed_reason,
                    },
                    actor_id=actor_id,
                )
                summary.rejected += 1
                continue

            await self._record_row(
                inbound, row, BatchItemStatus.ERROR, match=match, message=row.bank_message or "Unrecognized result"
            )
            summary.error_rows += 1

        batch_rows_total.labels(status="paid").inc(summary.paid)
        batch_rows_total.labels(status="rejected").inc(summary.rejected)
        batch_rows_total.labels(status="error").inc(summary.error_rows)

        for tenant_id in sorted(touched_tenants):
            await log_billing_event(
                self.db,
                "PD_BATCH_INBOUND_IMPORTED",
                tenant_id=tenant_id,
                payload={
                    "outbound_batch_id": outbound.id,
                    "inbound_batch_id": inbound.id,
                    "matched_rows": summary.matched_rows,
                    "paid": summary.paid,
                    "rejected": summary.rejected,
                    "error_rows": summary.error_rows,
                },
                actor_id=actor_id,
            )
        return summary

    async def _record_double_collection(
        self,
        outbound: PresentmentBatch,
        inbound: PresentmentBatch,
        match: BatchItem,
        attempt: Attempt,
        charge: Charge,
        row: ParsedInboundRow,
        amount: Decimal,
        processed_at: datetime,
        actor_id: Optional[str],
    ) -> None:
        """
        Record a bank debit for a charge that another channel already settled.

        The attempt is kept as PAID since the money was taken, but the row is
        an ERROR and the charge is flagged for manual reconciliation.
        """
        message = f"Charge already paid via {charge.paid_via_channel or 'another channel'}; collected twice"
        attempt.status = AttemptStatus.PAID
        attempt.processed_at = processed_at
        attempt.paid_reference = row.paid_reference
        attempt.notes = message
        charge.reconciliation_status = ReconciliationStatus.ERROR
        await self.db.flush()

        self._update_item(match, BatchItemStatus.ERROR, row, processed_at)
        match.response_message = message
        await self._record_row(inbound, row, BatchItemStatus.ERROR, match=match, amount=amount, message=message)
        await log_billing_event(
            self.db,
            "DOUBLE_COLLECTION_DETECTED",
            tenant_id=charge.tenant_id,
            payload={
                "outbound_batch_id": outbound.id,
                "inbound_batch_id": inbound.id,
                "attempt_id": attempt.id,
                "charge_id": charge.id,
                "paid_reference": row.paid_reference,
                "amount": amount,
                "charge_paid_via": charge.paid_via_channel,
                "charge_paid_reference": charge.paid_reference,
            },
            actor_id=actor_id,
        )
        logger.warning(
            "pd_double_collection_detected",
            charge_id=str(charge.id),
            attempt_id=str(attempt.id),
            paid_via=charge.paid_via_channel,
        )

    @staticmethod
    def _duplicate_summary(outbound_id: UUID, previous: PresentmentBatch) -> ImportSummary:
        logger.info("pd_batch_inbound_duplicate", outbound_batch_id=str(outbound_id), inbound_batch_id=str(previous.id))
        return ImportSummary(
            inbound_batch_id=previous.id,
            duplicate=True,
            matched_rows=(previous.meta or {}).get("matched_rows", 0),
            paid=previous.total_paid_rows,
            rejected=previous.total_rejected_rows,
            error_rows=previous.total_error_rows,
        )

    @staticmethod
    def _update_item(item: BatchItem, status: BatchItemStatus, row: ParsedInboundRow, when: datetime) -> None:
        item.status = status
        item.response_code = row.bank_code
        item.response_message = row.bank_message
        item.paid_reference = row.paid_reference
        item.processed_at = when

    async def _record_row(
        self,
        inbound: PresentmentBatch,
        row: ParsedInboundRow,
        status: BatchItemStatus,
        match: Optional[BatchItem] = None,
        amount: Optional[Decimal] = None,
        message: Optional[str] = None,
    ) -> BatchItem:
        return await self.batches.add_item(
            BatchItem(
                batch_id=inbound.id,
                line_no=row.line_no,
                attempt_id=match.attempt_id if match else None,
                charge_id=match.charge_id if match else None,
                external_reference=row.external_reference,
                row_hash=row.row_hash,
                amount=amount if amount is not None else row.amount,
                status=status,
                response_code=row.bank_code,
                response_message=message if message is not None else row.bank_message,
                paid_reference=row.paid_reference,
                row_payload=row.raw,
                processed_at=utcnow(),
            )
        )

    async def download_batch_file(self, batch_id: UUID) -> BatchFile:
        """
        Read a batch file back from storage.

        Raises:
            NotFound: If the batch or its file does not exist
            InvalidStateTransition: If the stored file no longer matches its hash
        """
        batch = await self.batches.get(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")
        if not batch.storage_key:
            raise NotFound(f"Batch {batch_id} has no stored file")

        content = await self.store.get(batch.storage_key)
        if batch.sha256 and sha256_of(content) != batch.sha256:
            logger.error("pd_batch_file_corrupted", batch_id=str(batch.id), storage_key=batch.storage_key)
            raise InvalidStateTransition(f"Stored file of batch {batch_id} does not match its SHA-256")

        file_name = batch.original_file_name or f"batch-{batch.id}-{batch.direction.value.lower()}.txt"
        return BatchFile(file_name, content, self.adapter.content_type)

    async def list_batches(self, direction: Optional[BatchDirection] = None) -> list[PresentmentBatch]:
        return await self.batches.list_batches(direction)
