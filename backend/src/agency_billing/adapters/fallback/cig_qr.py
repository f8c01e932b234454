"""QR-based fallback provider."""
import json
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
from agency_billing.models.base import utcnow


class CigQrProvider:
    """
    QR payment provider.

    The payment URL and QR payload are generated locally; status is derived
    from the stored snapshot until a gateway integration is configured.
    """

    key = "CIG_QR"
    version = "cig_qr_v1_stub"
    production_ready = False

    def __init__(self, base_url: str = "https://stub.cig.local"):
        self.base_url = base_url.rstrip("/")

    async def create_payment_intent_for_charge(self, request: CreateIntentRequest) -> CreateIntentResult:
        """
        Create a QR intent for a charge.

        Args:
            request: Charge, amount and idempotency data

        Returns:
            Intent handle with payment URL and QR payload
        """
        payment_url = f"{self.base_url}/pay/{quote(request.external_reference, safe='')}"
        qr_payload = json.dumps(
            {
                "provider": "cig_qr",
                "external_reference": request.external_reference,
                "amount": f"{request.amount:.2f}",
                "currency": request.currency,
                "expires_at": request.expires_at.isoformat() if request.expires_at else None,
            },
            sort_keys=True,
        )
        return CreateIntentResult(
            provider_payment_id=f"cig_{request.external_reference}",
            status=IntentCreationStatus.PENDING,
            payment_url=payment_url,
            qr_payload=qr_payload,
            provider_status="PENDING",
            provider_raw_payload={"created_at": utcnow().isoformat(), "payment_url": payment_url},
        )

    async def get_payment_status(self, snapshot: IntentSnapshot, now: datetime) -> PaymentStatusResult:
        mapped, _ = resolve_mapped_status(snapshot, now)
        paid_at = (snapshot.paid_at or now) if mapped == MappedPaymentStatus.PAID else None
        return PaymentStatusResult(
            provider_status=mapped.value,
            mapped_status=mapped,
            paid_at=paid_at,
            raw_payload={
                "provider": "cig_qr",
                "observed_at": now.isoformat(),
                "source_status": snapshot.provider_status or snapshot.status,
            },
        )

    async def cancel_payment_intent(self, snapshot: IntentSnapshot, now: datetime) -> CancelResult:
        final = CancelFinalStatus.PAID if is_snapshot_paid(snapshot) else CancelFinalStatus.CANCELED
        return CancelResult(final_status=final, raw_payload={"provider": "cig_qr", "canceled_at": now.isoformat()})
