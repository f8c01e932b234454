"""Bank file adapter lookup by configured name."""
from agency_billing.adapters.bank.base import BankFileAdapter
from agency_billing.adapters.bank.debug_csv import DebugCsvAdapter
from agency_billing.adapters.bank.galicia_pd_v1 import GaliciaPdV1Adapter
from agency_billing.errors import InvalidBillingInput

BANK_ADAPTERS = {
    GaliciaPdV1Adapter.name: GaliciaPdV1Adapter,
    DebugCsvAdapter.name: DebugCsvAdapter,
}


def get_bank_adapter(name: str) -> BankFileAdapter:
    """Instantiate the adapter registered under ``name``."""
    key = (name or "").strip().lower()
    try:
        return BANK_ADAPTERS[key]()
    except KeyError:
        raise InvalidBillingInput(f"Unknown bank file adapter: {name}") from None
