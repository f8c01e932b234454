"""Exception taxonomy for the billing engine.

Validation errors are reported to the caller and never retried. Crypto errors
are fatal for the operation. Reconciliation errors carry every discrepancy at
once. Provider errors are sanitized and transient unless stated otherwise.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Validation errors (400)
class InvalidBillingInput(BillingError, ValueError):
    code = "invalid_input"


class InvalidAccountNumber(InvalidBillingInput):
    code = "invalid_account_number"

    def __init__(self, message: str = "Invalid bank account number"):
        super().__init__(message)


class ConsentRequired(InvalidBillingInput):
    code = "consent_required"

    def __init__(self, message: str = "Direct debit consent must be accepted"):
        super().__init__(message)


class FileStructureError(InvalidBillingInput):
    code = "invalid_file_structure"


# Crypto errors (500)
class DecryptionFailed(BillingError):
    code = "decryption_failed"

    def __init__(self, message: str = "Encrypted value could not be authenticated"):
        super().__init__(message)


# Reconciliation errors (422)
class ControlTotalsMismatch(BillingError):
    code = "control_totals_mismatch"

    def __init__(self, errors: list[str], batch_id: Optional[str] = None):
        super().__init__("; ".join(errors) or "Control totals mismatch")
        self.errors = list(errors)
        self.batch_id = batch_id


# Provider errors (502)
class ProviderError(BillingError):
    code = "provider_error"

    def __init__(self, provider: str, message: str, transient: bool = True):
        super().__init__(message)
        self.provider = provider
        self.transient = transient


# Lookup / state errors
class NotFound(BillingError):
    code = "not_found"


class InvalidStateTransition(BillingError):
    code = "invalid_state_transition"


class ChargeAlreadyPaid(InvalidStateTransition):
    code = "charge_already_paid"
