"""CSV direct-debit format for development and manual reconciliation."""
import csv
import io
from typing import Iterable, Optional, Union

from agency_billing.adapters.bank.base import (
    AdapterConfig,
    BatchMeta,
    BuiltOutboundFile,
    ControlTotals,
    ParsedInboundFile,
    ParsedInboundRow,
    PresentmentRow,
    ValidationResult,
    canonical_row,
    compute_inbound_totals,
    compute_outbound_totals,
    decode_file_text,
    format_amount,
    parse_amount,
    sha256_hex,
    validate_inbound,
    validate_outbound,
)
from agency_billing.adapters.bank.result_codes import (
    BankResultMapping,
    BankResultStatus,
    map_bank_result_code_to_internal_status,
)
from agency_billing.errors import FileStructureError

OUTBOUND_COLUMNS = [
    "external_reference",
    "attempt_id",
    "charge_id",
    "tenant_id",
    "scheduled_for",
    "amount",
    "holder_name",
    "holder_tax_id",
    "account_last4",
]

RESPONSE_COLUMNS = [
    "external_reference",
    "result",
    "amount",
    "paid_reference",
    "rejection_code",
    "rejection_reason",
]

_PAID_WORDS = {"PAID", "PAGADO"}
_REJECTED_WORDS = {"REJECTED", "RECHAZADO"}


def _write_csv(header: list[str], rows: Iterable[list]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def build_debug_response_csv(records: list[dict]) -> bytes:
    """
    Build a response file in the debug CSV layout.

    Each record takes ``external_reference``, ``result`` and optionally
    ``amount``, ``paid_reference``, ``rejection_code``, ``rejection_reason``.
    """
    rows = [[record.get(column, "") or "" for column in RESPONSE_COLUMNS] for record in records]
    return _write_csv(RESPONSE_COLUMNS, rows).encode("utf-8")


class DebugCsvAdapter:
    """Human-readable CSV files; response rows carry an explicit result column."""

    name = "debug_csv"
    content_type = "text/csv; charset=utf-8"

    def build_outbound_file(
        self, batch_meta: BatchMeta, attempts: list[PresentmentRow], config: AdapterConfig
    ) -> BuiltOutboundFile:
        rows = [
            [
                row.external_reference,
                row.attempt_id,
                row.charge_id,
                row.tenant_id,
                row.scheduled_for.isoformat() if row.scheduled_for else "",
                format_amount(row.amount),
                row.holder_name or "",
                row.holder_tax_id or "",
                row.account_last4 or "",
            ]
            for row in attempts
        ]
        return BuiltOutboundFile(
            file_name=f"debug_pd_presentment_{batch_meta.business_date.isoformat()}_batch-{batch_meta.batch_id}.csv",
            file_text=_write_csv(OUTBOUND_COLUMNS, rows),
            content_type=self.content_type,
            control_totals=compute_outbound_totals(attempts),
        )

    def parse_inbound_file(self, content: Union[str, bytes]) -> ParsedInboundFile:
        """
        Parse a response CSV.

        The layout has no trailer, so declared totals are absent and only
        duplicate rows are checked on validation.

        Raises:
            FileStructureError: If the bytes are not UTF-8 or header columns are missing
        """
        text = decode_file_text(content)
        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            raise FileStructureError("Response file is empty")

        reader = csv.reader(lines)
        header = [column.strip() for column in next(reader)]
        missing = [column for column in ("external_reference", "result") if column not in header]
        if missing:
            raise FileStructureError(f"Response file header lacks columns: {', '.join(missing)}")

        warnings: list[str] = []
        rows: list[ParsedInboundRow] = []
        for line_no, values in enumerate(reader, start=2):
            raw = {column: (values[i].strip() if i < len(values) else "") for i, column in enumerate(header)}
            row = self._parse_row(line_no, raw, warnings)
            if row is not None:
                rows.append(row)

        return ParsedInboundFile(rows=rows, control_totals=compute_inbound_totals(rows), parse_warnings=warnings)

    def _parse_row(self, line_no: int, raw: dict, warnings: list[str]) -> Optional[ParsedInboundRow]:
        amount = None
        if raw.get("amount"):
            amount = parse_amount(raw["amount"])
            if amount is None:
                warnings.append(f"line {line_no}: invalid amount {raw['amount']!r}")
                return None

        result = raw.get("result", "").upper()
        code = raw.get("rejection_code") or None
        reason = None
        if result in _PAID_WORDS:
            status = BankResultStatus.PAID
        elif result in _REJECTED_WORDS:
            status = BankResultStatus.REJECTED
            mapping = self.map_bank_result_code_to_internal_status(code)
            if mapping.status == BankResultStatus.REJECTED:
                reason = mapping.detailed_reason
        else:
            status = BankResultStatus.ERROR

        return ParsedInboundRow(
            line_no=line_no,
            external_reference=raw.get("external_reference") or None,
            row_hash=sha256_hex(canonical_row(raw)),
            mapped_status=status,
            mapped_detailed_reason=reason,
            amount=amount,
            bank_code=code,
            bank_message=raw.get("rejection_reason") or None,
            paid_reference=raw.get("paid_reference") or None,
            raw=raw,
        )

    def map_bank_result_code_to_internal_status(
        self, code: Optional[str], message: Optional[str] = None
    ) -> BankResultMapping:
        return map_bank_result_code_to_internal_status(code, message)

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, attempts: list[PresentmentRow]
    ) -> ValidationResult:
        return validate_outbound(control_totals, attempts)

    def validate_inbound_control_totals(self, parsed: ParsedInboundFile) -> ValidationResult:
        return validate_inbound(parsed)
