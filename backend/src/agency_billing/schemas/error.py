"""Structured error response schemas."""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every error carries a type, a message, optional per-item details (all
    control-total discrepancies of a batch, for instance), a remediation hint
    and the request id for tracing.
    """

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFound', 'Conflict')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Error timestamp")


class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400)
    INVALID_INPUT = "invalid_input"
    INVALID_ACCOUNT_NUMBER = "invalid_account_number"
    CONSENT_REQUIRED = "consent_required"
    INVALID_FILE_STRUCTURE = "invalid_file_structure"
    MISSING_REQUIRED_FIELD = "missing_required_field"

    # Reconciliation errors (422)
    CONTROL_TOTALS_MISMATCH = "control_totals_mismatch"

    # State errors (409)
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    CHARGE_ALREADY_PAID = "charge_already_paid"

    # Not found errors (404)
    NOT_FOUND = "not_found"

    # Authorization errors (401, 403)
    AUTHENTICATION_REQUIRED = "authentication_required"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"

    # External service errors (502)
    PROVIDER_ERROR = "provider_error"

    # Internal errors (500)
    DECRYPTION_FAILED = "decryption_failed"
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.INVALID_ACCOUNT_NUMBER: "Check the 22-digit account number; both check digits must match.",
    ErrorCode.CONSENT_REQUIRED: "The direct-debit mandate text must be accepted.",
    ErrorCode.CONTROL_TOTALS_MISMATCH: "Request a corrected response file from the bank and import it again.",
    ErrorCode.INVALID_FILE_STRUCTURE: "The file must include its header and trailer records.",
    ErrorCode.PROVIDER_ERROR: "The payment provider is temporarily unavailable. The next sync will retry.",
}
