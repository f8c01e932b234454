"""Pipe-delimited direct-debit format (``H|...``, ``D|...``, ``T|...`` records).

Outbound presentment::

    H|GALICIA_PD|v1.0|<company>|PD|<yyyymmdd>|<count>|<amount>|
    D|<seq>|<reference>|<amount>|<yyyymmdd>|<holder>|<tax id>|<last4>|<attempt>|<charge>
    T|<count>|<amount>|<checksum>

Inbound response::

    H|GALICIA_PD_RESP|v1.0|<company>|PD|<yyyymmdd>|<count>|<amount>|
    D|<seq>|<reference>|<code>|<message>|<amount>|<yyyymmddHHMMSS>|<trace>|<operation>
    T|<count>|<amount>|
"""
from datetime import datetime, timezone
from typing import Optional, Union

import structlog

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
    compare_totals,
    compute_inbound_totals,
    compute_outbound_totals,
    decode_file_text,
    format_amount,
    parse_amount,
    sha256_hex,
    validate_inbound,
    validate_outbound,
)
from agency_billing.adapters.bank.result_codes import BankResultMapping, map_bank_result_code_to_internal_status
from agency_billing.core.dates import local_date
from agency_billing.errors import FileStructureError

logger = structlog.get_logger(__name__)

OUTBOUND_TAG = "GALICIA_PD"
INBOUND_TAG = "GALICIA_PD_RESP"
FORMAT_VERSION = "v1.0"
DETAIL_FIELD_COUNT = 9


def _field(value) -> str:
    """Field value with separators and line breaks removed."""
    text = "" if value is None else str(value)
    return text.replace("|", " ").replace("\r", " ").replace("\n", " ").strip()


def _parse_timestamp(raw: str) -> Optional[datetime]:
    try:
        return datetime.strptime(raw.strip(), "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_count(raw: str) -> Optional[int]:
    try:
        return int(raw.strip())
    except ValueError:
        return None


class GaliciaPdV1Adapter:
    """Direct-debit presentment/response files in the Galicia PD v1 layout."""

    name = "galicia_pd_v1"
    content_type = "text/plain; charset=utf-8"

    def build_outbound_file(
        self, batch_meta: BatchMeta, attempts: list[PresentmentRow], config: AdapterConfig
    ) -> BuiltOutboundFile:
        """
        Build a presentment file.

        Args:
            batch_meta: Batch id and business date
            attempts: Rows to present, in file order
            config: Adapter settings

        Returns:
            File text with its control totals
        """
        totals = compute_outbound_totals(attempts)
        day = batch_meta.business_date.strftime("%Y%m%d")

        lines = [
            "|".join(
                [
                    "H",
                    OUTBOUND_TAG,
                    FORMAT_VERSION,
                    _field(config.company_code),
                    "PD",
                    day,
                    str(totals.record_count),
                    format_amount(totals.amount_total),
                    "",
                ]
            )
        ]
        for seq, row in enumerate(attempts, start=1):
            scheduled = (
                local_date(row.scheduled_for, row.timezone or config.timezone).strftime("%Y%m%d")
                if row.scheduled_for
                else ""
            )
            lines.append(
                "|".join(
                    [
                        "D",
                        str(seq),
                        _field(row.external_reference),
                        format_amount(row.amount),
                        scheduled,
                        _field(row.holder_name),
                        _field(row.holder_tax_id),
                        _field(row.account_last4),
                        _field(row.attempt_id),
                        _field(row.charge_id),
                    ]
                )
            )
        lines.append("|".join(["T", str(totals.record_count), format_amount(totals.amount_total), totals.checksum]))

        return BuiltOutboundFile(
            file_name=f"galicia_pd_v1_{_field(config.company_code)}_{day}_batch-{batch_meta.batch_id}.txt",
            file_text="\n".join(lines) + "\n",
            content_type=self.content_type,
            control_totals=totals,
        )

    def parse_inbound_file(self, content: Union[str, bytes]) -> ParsedInboundFile:
        """
        Parse a response file.

        Malformed detail lines become warnings. A missing header or trailer
        makes the whole file invalid.

        Raises:
            FileStructureError: If the bytes are not UTF-8 or the header or trailer is missing
        """
        text = decode_file_text(content)
        numbered = [(no, line.strip()) for no, line in enumerate(text.splitlines(), start=1) if line.strip()]
        if not numbered or not numbered[0][1].startswith(f"H|{INBOUND_TAG}|"):
            raise FileStructureError("Response file has no GALICIA_PD_RESP header")
        if not numbered[-1][1].startswith("T|"):
            raise FileStructureError("Response file has no trailer record")

        warnings: list[str] = []
        header = numbered[0][1].split("|")
        trailer = numbered[-1][1].split("|")

        rows: list[ParsedInboundRow] = []
        for line_no, line in numbered[1:-1]:
            row = self._parse_detail(line_no, line, warnings)
            if row is not None:
                rows.append(row)

        declared = self._declared_totals(trailer, warnings)
        computed = compute_inbound_totals(rows)

        header_count = _parse_count(header[6]) if len(header) > 6 else None
        header_amount = parse_amount(header[7]) if len(header) > 7 else None
        if declared is not None and (
            header_count != declared.record_count or header_amount != declared.amount_total
        ):
            warnings.append("header totals differ from trailer totals")
        if declared is not None:
            warnings.extend(compare_totals(declared, computed))

        if warnings:
            logger.warning("pd_inbound_parse_warnings", adapter=self.name, warning_count=len(warnings))

        return ParsedInboundFile(
            rows=rows,
            declared_totals=declared,
            control_totals=computed,
            parse_warnings=warnings,
        )

    def _parse_detail(self, line_no: int, line: str, warnings: list[str]) -> Optional[ParsedInboundRow]:
        parts = line.split("|")
        if parts[0] != "D":
            warnings.append(f"line {line_no}: unexpected record type {parts[0]!r}")
            return None
        if len(parts) < DETAIL_FIELD_COUNT:
            warnings.append(f"line {line_no}: expected {DETAIL_FIELD_COUNT} fields, got {len(parts)}")
            return None

        _, seq, reference, code, message, amount_raw, timestamp, trace, operation = parts[:DETAIL_FIELD_COUNT]
        amount = parse_amount(amount_raw)
        if amount is None:
            warnings.append(f"line {line_no}: invalid amount {amount_raw!r}")
            return None

        raw = {
            "seq": seq.strip(),
            "external_reference": reference.strip(),
            "code": code.strip(),
            "message": message.strip(),
            "amount": amount_raw.strip(),
            "processed_at": timestamp.strip(),
            "trace": trace.strip(),
            "operation": operation.strip(),
        }
        mapping = self.map_bank_result_code_to_internal_status(raw["code"], raw["message"])
        return ParsedInboundRow(
            line_no=line_no,
            external_reference=raw["external_reference"] or None,
            row_hash=sha256_hex(canonical_row(raw)),
            mapped_status=mapping.status,
            mapped_detailed_reason=mapping.detailed_reason,
            amount=amount,
            bank_code=raw["code"] or None,
            bank_message=raw["message"] or None,
            paid_reference=raw["trace"] or raw["operation"] or None,
            processed_at=_parse_timestamp(raw["processed_at"]),
            raw=raw,
        )

    @staticmethod
    def _declared_totals(trailer: list[str], warnings: list[str]) -> Optional[ControlTotals]:
        count = _parse_count(trailer[1]) if len(trailer) > 1 else None
        amount = parse_amount(trailer[2]) if len(trailer) > 2 else None
        if count is None or amount is None:
            warnings.append("trailer totals are malformed")
            return None
        return ControlTotals(record_count=count, amount_total=amount)

    def map_bank_result_code_to_internal_status(
        self, code: Optional[str], message: Optional[str] = None
    ) -> BankResultMapping:
        return map_bank_result_code_to_internal_status(code, message)

    def validate_outbound_control_totals(
        self, control_totals: ControlTotals, attempts: list[PresentmentRow]
    ) -> ValidationResult:
        return validate_outbound(control_totals, attempts)

    def validate_inbound_control_totals(self, parsed: ParsedInboundFile) -> ValidationResult:
        result = validate_inbound(parsed)
        if parsed.declared_totals is None:
            result.errors.insert(0, "trailer totals are missing or malformed")
            result.ok = False
        return result
