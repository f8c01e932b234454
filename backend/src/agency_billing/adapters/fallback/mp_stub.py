"""Redirect-based fallback provider placeholder.

NOT FOR PRODUCTION: no gateway is contacted and the status mapping only echoes
the locally stored snapshot. It does not reflect a real integration.
"""
from datetime import datetime
from urllib.parse import quote

from agency_billing.adapters.fallback.contract import (
    CancelFinalStatus,
    CancelResult,
    CreateIntentRequest,
    CreateIntentResult,
    IntentCreationStatus,
    IntentSnapshot,
    MappedPaymentStatus,
    PaymentStatusResult,
    is_snapshot_paid,
    resolve_mapped_status,
)


class MercadoPagoStubProvider:
    """Redirect checkout stub."""

    key = "MP"
    version = "mp_stub_v1"
    production_ready = False

    async def create_payment_intent_for_charge(self, request: CreateIntentRequest) -> CreateIntentResult:
        return CreateIntentResult(
            provider_payment_id=f"mp_{request.external_reference}",
            status=IntentCreationStatus.PENDING,
            payment_url=f"https://stub.mp.local/checkout/{quote(request.external_reference, safe='')}",
            provider_status="PENDING",
            provider_raw_payload={"provider": "mp_stub", "external_reference": request.external_reference},
        )

    async def get_payment_status(self, snapshot: IntentSnapshot, now: datetime) -> PaymentStatusResult:
        mapped, by_ttl = resolve_mapped_status(snapshot, now)
        raw_status = "EXPIRED_BY_TTL" if by_ttl else mapped.value
        return PaymentStatusResult(
            provider_status=mapped.value,
            mapped_status=mapped,
            paid_at=(snapshot.paid_at or now) if mapped == MappedPaymentStatus.PAID else None,
            raw_payload={"provider": "mp_stub", "status": raw_status},
        )

    async def cancel_payment_intent(self, snapshot: IntentSnapshot, now: datetime) -> CancelResult:
        paid = is_snapshot_paid(snapshot)
        return CancelResult(
            final_status=CancelFinalStatus.PAID if paid else CancelFinalStatus.CANCELED,
            raw_payload={"provider": "mp_stub", "canceled": not paid},
        )
