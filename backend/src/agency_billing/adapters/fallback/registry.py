"""Fallback provider registry keyed by provider identifier."""
from typing import Iterable, Optional

import structlog

from agency_billing.adapters.fallback.cig_qr import CigQrProvider
from agency_billing.adapters.fallback.contract import FallbackProvider
from agency_billing.adapters.fallback.mp_stub import MercadoPagoStubProvider

logger = structlog.get_logger(__name__)


class FallbackProviderRegistry:
    """
    Resolves provider keys to implementations.

    Unknown keys resolve to the default provider instead of failing.
    """

    def __init__(self, providers: Iterable[FallbackProvider], default_key: str):
        self._providers = {provider.key.upper(): provider for provider in providers}
        if default_key.upper() not in self._providers:
            raise ValueError(f"Default fallback provider {default_key} is not registered")
        self.default_key = default_key.upper()

    @property
    def keys(self) -> list[str]:
        return sorted(self._providers)

    def resolve(self, key: Optional[str]) -> FallbackProvider:
        """Provider for ``key``, or the default one."""
        normalized = (key or "").strip().upper()
        provider = self._providers.get(normalized)
        if provider is None:
            logger.info("fallback_provider_defaulted", requested=key, default=self.default_key)
            return self._providers[self.default_key]
        return provider


def build_default_registry(default_key: str = "CIG_QR") -> FallbackProviderRegistry:
    """Registry with the built-in providers."""
    return FallbackProviderRegistry([CigQrProvider(), MercadoPagoStubProvider()], default_key=default_key)
