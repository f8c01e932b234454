"""Bank file adapter contract and shared control-total helpers."""
import hashlib
from collections import Counter
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, Field

from agency_billing.adapters.bank.result_codes import BankResultMapping, BankResultStatus, DetailedReason
from agency_billing.core.pricing import round2
from agency_billing.errors import FileStructureError

DUPLICATE_ROW_HASH = "duplicate row_hash"


class PresentmentRow(BaseModel):
    """One attempt to present in an outbound file."""

    attempt_id: str
    charge_id: str
    tenant_id: int
    external_reference: str
    amount: Decimal
    scheduled_for: Optional[datetime] = None
    timezone: Optional[str] = None
    holder_name: Optional[str] = None
    holder_tax_id: Optional[str] = None
    account_last4: Optional[str] = None


class BatchMeta(BaseModel):
    """Batch-level data for an outbound file."""

    batch_id: str
    business_date: date


class AdapterConfig(BaseModel):
    """Adapter settings taken from the application configuration."""

    company_code: str = "0001"
    timezone: str = "UTC"


class ControlTotals(BaseModel):
    """Record count, amount sum and checksum of a file."""

    record_count: int
    amount_total: Decimal
    checksum: Optional[str] = None


class BuiltOutboundFile(BaseModel):
    """Outbound file ready for storage."""

    file_name: str
    file_text: str
    content_type: str
    control_totals: ControlTotals

    @property
    def file_bytes(self) -> bytes:
        return self.file_text.encode("utf-8")


class ParsedInboundRow(BaseModel):
    """One detail row of a bank response file."""

    line_no: int
    external_reference: Optional[str] = None
    row_hash: str
    mapped_status: BankResultStatus
    mapped_detailed_reason: Optional[DetailedReason] = None
    amount: Optional[Decimal] = None
    bank_code: Optional[str] = None
    bank_message: Optional[str] = None
    paid_reference: Optional[str] = None
    processed_at: Optional[datetime] = None
    raw: dict = Field(default_factory=dict)


class ParsedInboundFile(BaseModel):
    """Parsed bank response file."""

    rows: list[ParsedInboundRow]
    declared_totals: Optional[ControlTotals] = None
    control_totals: ControlTotals
    parse_warnings: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of a control-total check. Lists every discrepancy."""

    ok: bool
    errors: list[str] = Field(default_factory=list)


class BankFileAdapter(Protocol):
    """Builds presentment files and parses response files for one bank format."""

    name: str

    def build_outbound_file(
        self, batch_meta: BatchMeta, attempts: list[PresentmentRow], config: AdapterConfig
    ) -> BuiltOutboundFile:
        ...

    def parse_inbound_file(self, content: Union[str, bytes]) -> ParsedInboundFile:
        ...

    def map_bank_result_code_to_internal_status(
        self, code: Optional[str], message: Optional[str] = None
    ) -> BankResultMapping:
        ...

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, attempts: list[PresentmentRow]
    ) -> ValidationResult:
        ...

    def validate_inbound_control_totals(self, parsed: ParsedInboundFile) -> ValidationResult:
        ...


def decode_file_text(content: Union[str, bytes]) -> str:
    """
    Text of a bank file without its byte-order mark.

    Raises:
        FileStructureError: If the bytes are not valid UTF-8
    """
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FileStructureError(f"File is not valid UTF-8 at offset {e.start}: {e.reason}") from e


def canonical_row(fields: Mapping[str, object]) -> str:
    """Key-sorted ``key=value`` lines joined by newlines."""
    return "\n".join(f"{key}={'' if fields[key] is None else fields[key]}" for key in sorted(fields))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def presentment_fields(row: PresentmentRow) -> dict:
    """Fields of an outbound row that the checksum covers."""
    return {
        "external_reference": row.external_reference,
        "attempt_id": row.attempt_id,
        "charge_id": row.charge_id,
        "tenant_id": row.tenant_id,
        "amount": format_amount(row.amount),
        "scheduled_for": row.scheduled_for.isoformat() if row.scheduled_for else "",
        "holder_name": row.holder_name or "",
        "holder_tax_id": row.holder_tax_id or "",
        "account_last4": row.account_last4 or "",
    }


def compute_checksum(rows: Iterable[Mapping[str, object]]) -> str:
    """SHA-256 over canonical rows joined by newlines."""
    return sha256_hex("\n".join(canonical_row(fields) for fields in rows))


def compute_outbound_totals(attempts: list[PresentmentRow]) -> ControlTotals:
    return ControlTotals(
        record_count=len(attempts),
        amount_total=round2(sum((row.amount for row in attempts), Decimal("0"))),
        checksum=compute_checksum(presentment_fields(row) for row in attempts),
    )


def compute_inbound_totals(rows: list[ParsedInboundRow]) -> ControlTotals:
    return ControlTotals(
        record_count=len(rows),
        amount_total=round2(sum((row.amount or Decimal("0") for row in rows), Decimal("0"))),
        checksum=compute_checksum({"row_hash": row.row_hash} for row in rows),
    )


def format_amount(value) -> str:
    return f"{round2(value):.2f}"


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a decimal amount, accepting a comma as decimal separator."""
    text = (raw or "").strip().replace(",", ".")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return round2(value)


def compare_totals(declared: ControlTotals, computed: ControlTotals) -> list[str]:
    """Every difference between declared and computed totals."""
    errors = []
    if declared.record_count != computed.record_count:
        errors.append(
            f"record_count mismatch: declared {declared.record_count}, computed {computed.record_count}"
        )
    if round2(declared.amount_total) != round2(computed.amount_total):
        errors.append(
            f"amount_total mismatch: declared {format_amount(declared.amount_total)}, "
            f"computed {format_amount(computed.amount_total)}"
        )
    if declared.checksum and computed.checksum and declared.checksum != computed.checksum:
        errors.append("checksum mismatch")
    return errors


def validate_outbound(control_totals: ControlTotals, attempts: list[PresentmentRow]) -> ValidationResult:
    """Recompute outbound totals from the attempts and compare."""
    errors = compare_totals(control_totals, compute_outbound_totals(attempts))
    duplicates = [ref for ref, count in Counter(row.external_reference for row in attempts).items() if count > 1]
    errors.extend(f"duplicate external_reference {ref}" for ref in sorted(duplicates))
    return ValidationResult(ok=not errors, errors=errors)


def validate_inbound(parsed: ParsedInboundFile) -> ValidationResult:
    """Compare declared totals with the parsed rows and flag duplicate row hashes."""
    errors = []
    if parsed.declared_totals is not None:
        errors.extend(compare_totals(parsed.declared_totals, compute_inbound_totals(parsed.rows)))

    seen: dict[str, int] = {}
    for row in parsed.rows:
        if row.row_hash in seen:
            errors.append(f"{DUPLICATE_ROW_HASH} at line {row.line_no} (first seen at line {seen[row.row_hash]})")
        else:
            seen[row.row_hash] = row.line_no
    return ValidationResult(ok=not errors, errors=errors)
