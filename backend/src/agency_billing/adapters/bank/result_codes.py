"""Bank result code mapping for direct-debit response files."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class BankResultStatus(str, Enum):
    """Internal outcome of one bank response row."""

    PAID = "PAID"
    REJECTED = "REJECTED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class DetailedReason(str, Enum):
    """Closed set of detailed reasons."""

    REJECTED_INSUFFICIENT_FUNDS = "REJECTED_INSUFFICIENT_FUNDS"
    REJECTED_INVALID_ACCOUNT = "REJECTED_INVALID_ACCOUNT"
    REJECTED_MANDATE_INVALID = "REJECTED_MANDATE_INVALID"
    REJECTED_ACCOUNT_CLOSED = "REJECTED_ACCOUNT_CLOSED"
    ERROR_FORMAT = "ERROR_FORMAT"
    ERROR_DUPLICATE = "ERROR_DUPLICATE"


class BankResultMapping(BaseModel):
    """Mapped status plus detailed reason."""

    status: BankResultStatus
    detailed_reason: Optional[DetailedReason] = None


_CODE_MAP = {
    "00": (BankResultStatus.PAID, None),
    "51": (BankResultStatus.REJECTED, DetailedReason.REJECTED_INSUFFICIENT_FUNDS),
    "14": (BankResultStatus.REJECTED, DetailedReason.REJECTED_INVALID_ACCOUNT),
    "RC01": (BankResultStatus.REJECTED, DetailedReason.REJECTED_INVALID_ACCOUNT),
    "MD01": (BankResultStatus.REJECTED, DetailedReason.REJECTED_MANDATE_INVALID),
    "MD07": (BankResultStatus.REJECTED, DetailedReason.REJECTED_MANDATE_INVALID),
    "15": (BankResultStatus.REJECTED, DetailedReason.REJECTED_ACCOUNT_CLOSED),
    "AC04": (BankResultStatus.REJECTED, DetailedReason.REJECTED_ACCOUNT_CLOSED),
    "96": (BankResultStatus.ERROR, DetailedReason.ERROR_FORMAT),
    "94": (BankResultStatus.ERROR, DetailedReason.ERROR_DUPLICATE),
}


def map_bank_result_code_to_internal_status(code: Optional[str], message: Optional[str] = None) -> BankResultMapping:
    """
    Map a bank result code to an internal status.

    Unrecognized or empty codes map to UNKNOWN without raising. The message is
    accepted for adapters that need it but does not change the mapping.
    """
    normalized = (code or "").strip().upper()
    status, reason = _CODE_MAP.get(normalized, (BankResultStatus.UNKNOWN, None))
    return BankResultMapping(status=status, detailed_reason=reason)
