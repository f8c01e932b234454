"""Fallback service: online payment intents for charges the bank did not collect."""
import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, NamedTuple, Optional, TypeVar
from uuid import UUID

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.adapters.fallback.contract import (
    CancelFinalStatus,
    CreateIntentRequest,
    FallbackProvider,
    IntentSnapshot,
    MappedPaymentStatus,
)
from agency_billing.adapters.fallback.registry import FallbackProviderRegistry, build_default_registry
from agency_billing.config import Settings
from agency_billing.errors import ChargeAlreadyPaid, InvalidBillingInput, InvalidStateTransition, NotFound, ProviderError
from agency_billing.metrics import fallback_intents_total, provider_errors_total
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.base import utcnow
from agency_billing.models.charge import Charge, ChargeStatus, ReconciliationStatus
from agency_billing.models.cycle import CycleStatus
from agency_billing.models.fallback_intent import TERMINAL_INTENT_STATUSES, FallbackIntent, FallbackIntentStatus
from agency_billing.repositories.attempts import AttemptRepository
from agency_billing.repositories.charges import ChargeRepository
from agency_billing.repositories.fallback_intents import FallbackIntentRepository
from agency_billing.utils.audit import log_billing_event
from agency_billing.utils.sanitize import sanitize_provider_message

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CANCELED_BY_FALLBACK_NOTE = "Canceled after payment through the fallback channel"

_ATTEMPT_STATUS_BY_INTENT = {
    FallbackIntentStatus.PAID: AttemptStatus.PAID,
    FallbackIntentStatus.EXPIRED: AttemptStatus.EXPIRED,
    FallbackIntentStatus.FAILED: AttemptStatus.ERROR,
    FallbackIntentStatus.CANCELED: AttemptStatus.CANCELED,
}


class IntentResult(NamedTuple):
    intent: FallbackIntent
    created: bool


def snapshot_of(intent: FallbackIntent) -> IntentSnapshot:
    """Locally stored view of an intent, as passed back to its provider."""
    return IntentSnapshot(
        provider_payment_id=intent.provider_payment_id,
        external_reference=intent.external_reference,
        status=intent.status.value,
        provider_status=intent.provider_status,
        expires_at=intent.expires_at,
        paid_at=intent.paid_at,
    )


class FallbackService:
    """Service creating, syncing and canceling fallback payment intents."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        registry: Optional[FallbackProviderRegistry] = None,
    ):
        """Initialize fallback service."""
        self.db = db
        self.settings = settings
        self.registry = registry or build_default_registry(settings.fallback_default_provider)
        self.intents = FallbackIntentRepository(db)
        self.charges = ChargeRepository(db)
        self.attempts = AttemptRepository(db)

    async def _call_provider(self, provider: FallbackProvider, operation: str, call: Awaitable[T]) -> T:
        """Run one provider call bounded by the configured timeout. Never retried here."""
        timeout = self.settings.fallback_provider_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            provider_errors_total.labels(provider=provider.key, kind="timeout").inc()
            logger.warning("fallback_provider_timeout", provider=provider.key, operation=operation, timeout=timeout)
            raise ProviderError(provider.key, f"{operation} timed out after {timeout}s") from None
        except ProviderError:
            provider_errors_total.labels(provider=provider.key, kind="error").inc()
            raise
        except httpx.HTTPError as e:
            message = sanitize_provider_message(e)
            provider_errors_total.labels(provider=provider.key, kind="http").inc()
            logger.warning("fallback_provider_http_error", provider=provider.key, operation=operation, error=message)
            raise ProviderError(provider.key, message) from e
        except Exception as e:
            message = sanitize_provider_message(e)
            provider_errors_total.labels(provider=provider.key, kind="error").inc()
            logger.error("fallback_provider_error", provider=provider.key, operation=operation, error=message)
            raise ProviderError(provider.key, message) from e

    async def create_intent_for_charge(
        self,
        charge_id: UUID,
        provider_key: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IntentResult:
        """
        Create a fallback payment intent for an unpaid charge.

        An intent with the same idempotency key, or a still-open intent for the
        charge, is returned instead of creating another one.

        Args:
            charge_id: Charge to collect
            provider_key: Provider key; unknown keys use the default provider
            idempotency_key: Caller-supplied idempotency key
            actor_id: User or job creating the intent
            now: Current instant

        Returns:
            The intent and whether this call created it

        Raises:
            NotFound: If the charge does not exist
            ChargeAlreadyPaid: If the charge is paid
            InvalidBillingInput: If the idempotency key belongs to another charge
            InvalidStateTransition: If the charge is canceled
            ProviderError: If the provider call fails or times out
        """
        now = now or utcnow()
        if idempotency_key:
            existing = await self.intents.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                if existing.charge_id != charge_id:
                    raise InvalidBillingInput(
                        f"Idempotency key {idempotency_key!r} was already used for another charge"
                    )
                return IntentResult(existing, False)

        charge = await self.charges.get(charge_id)
        if charge is None:
            raise NotFound(f"Charge {charge_id} not found")
        if charge.is_paid:
            raise ChargeAlreadyPaid(f"Charge {charge_id} is already paid")
        if charge.status == ChargeStatus.CANCELED:
            raise InvalidStateTransition(f"Charge {charge_id} is canceled")

        provider = self.registry.resolve(provider_key)
        for intent in await self.intents.list_for_charge(charge.id):
            if intent.status not in TERMINAL_INTENT_STATUSES and intent.provider == provider.key:
                if intent.expires_at is None or intent.expires_at > now:
                    return IntentResult(intent, False)

        attempt = Attempt(
            charge_id=charge.id,
            attempt_no=await self.attempts.next_attempt_no(charge.id),
            channel=AttemptChannel.FALLBACK,
            status=AttemptStatus.PENDING,
            scheduled_for=now,
        )
        await self.attempts.add(attempt)
        attempt.external_reference = f"FB-{attempt.id}"

        expires_at = now + timedelta(hours=self.settings.fallback_intent_ttl_hours)
        key = idempotency_key or f"charge:{charge.id}:fallback:{attempt.attempt_no}"
        result = await self._call_provider(
            provider,
            "create_payment_intent",
            provider.create_payment_intent_for_charge(
                CreateIntentRequest(
                    charge_id=str(charge.id),
                    tenant_id=charge.tenant_id,
                    amount=charge.amount_due,
                    currency=charge.currency,
                    external_reference=attempt.external_reference,
                    idempotency_key=key,
                    expires_at=expires_at,
                )
            ),
        )

        intent = FallbackIntent(
            tenant_id=charge.tenant_id,
            charge_id=charge.id,
            attempt_id=attempt.id,
            provider=provider.key,
            status=FallbackIntentStatus(result.status.value),
            amount=charge.amount_due,
            currency=charge.currency,
            external_reference=attempt.external_reference,
            idempotency_key=key,
            provider_payment_id=result.provider_payment_id,
            provider_status=result.provider_status,
            payment_url=result.payment_url,
            qr_payload=result.qr_payload,
            expires_at=expires_at,
            provider_raw_payload=result.provider_raw_payload,
        )
        await self.intents.add(intent)

        await log_billing_event(
            self.db,
            "FALLBACK_INTENT_CREATED",
            tenant_id=charge.tenant_id,
            payload={
                "intent_id": intent.id,
                "charge_id": charge.id,
                "attempt_id": attempt.id,
                "provider": provider.key,
                "provider_version": provider.version,
                "amount": intent.amount,
                "expires_at": expires_at,
            },
            actor_id=actor_id,
        )
        fallback_intents_total.labels(provider=provider.key, status="created").inc()
        if not provider.production_ready:
            logger.warning("fallback_provider_not_production_ready", provider=provider.key, version=provider.version)
        logger.info(
            "fallback_intent_created",
            intent_id=str(intent.id),
            charge_id=str(charge.id),
            provider=provider.key,
        )
        return IntentResult(intent, True)

    async def sync_intent(
        self, intent_id: UUID, actor_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> FallbackIntent:
        """
        Refresh an intent from its provider and apply the outcome.

        Terminal intents are returned unchanged.

        Raises:
            NotFound: If the intent does not exist
            ProviderError: If the provider call fails or times out
        """
        now = now or utcnow()
        intent = await self._get_intent(intent_id)
        if intent.status in TERMINAL_INTENT_STATUSES:
            return intent

        provider = self.registry.resolve(intent.provider)
        status = await self._call_provider(
            provider, "get_payment_status", provider.get_payment_status(snapshot_of(intent), now)
        )

        previous = intent.status
        intent.provider_status = status.provider_status
        intent.provider_raw_payload = status.raw_payload
        if status.mapped_status == MappedPaymentStatus.PAID:
            await self._mark_paid(intent, status.paid_at or now)
        elif status.mapped_status == MappedPaymentStatus.EXPIRED:
            await self._close(intent, FallbackIntentStatus.EXPIRED, now)
        elif status.mapped_status == MappedPaymentStatus.FAILED:
            intent.failure_code = status.provider_status
            await self._close(intent, FallbackIntentStatus.FAILED, now)
        elif intent.status == FallbackIntentStatus.CREATED:
            intent.status = FallbackIntentStatus.PENDING
        await self.db.flush()

        if intent.status != previous:
            await log_billing_event(
                self.db,
                "FALLBACK_INTENT_SYNCED",
                tenant_id=intent.tenant_id,
                payload={
                    "intent_id": intent.id,
                    "charge_id": intent.charge_id,
                    "provider": intent.provider,
                    "previous_status": previous,
                    "status": intent.status,
                    "provider_status": intent.provider_status,
                },
                actor_id=actor_id,
            )
            fallback_intents_total.labels(provider=intent.provider, status=intent.status.value.lower()).inc()
        logger.info(
            "fallback_intent_synced",
            intent_id=str(intent.id),
            provider=intent.provider,
            previous_status=previous.value,
            status=intent.status.value,
        )
        return intent

    async def cancel_intent(
        self, intent_id: UUID, actor_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> FallbackIntent:
        """
        Cancel an open intent.

        A provider reporting the intent as already paid settles the charge
        instead of canceling it.
        """
        now = now or utcnow()
        intent = await self._get_intent(intent_id)
        if intent.status in TERMINAL_INTENT_STATUSES:
            return intent

        provider = self.registry.resolve(intent.provider)
        result = await self._call_provider(
            provider, "cancel_payment_intent", provider.cancel_payment_intent(snapshot_of(intent), now)
        )
        intent.provider_raw_payload = result.raw_payload
        if result.final_status == CancelFinalStatus.PAID:
            await self._mark_paid(intent, intent.paid_at or now)
        else:
            await self._close(intent, FallbackIntentStatus.CANCELED, now)
        await self.db.flush()

        await log_billing_event(
            self.db,
            "FALLBACK_INTENT_CANCELED" if intent.status == FallbackIntentStatus.CANCELED else "FALLBACK_INTENT_SYNCED",
            tenant_id=intent.tenant_id,
            payload={"intent_id": intent.id, "charge_id": intent.charge_id, "status": intent.status},
            actor_id=actor_id,
        )
        fallback_intents_total.labels(provider=intent.provider, status=intent.status.value.lower()).inc()
        logger.info("fallback_intent_canceled", intent_id=str(intent.id), status=intent.status.value)
        return intent

    async def list_for_charge(self, charge_id: UUID) -> list[FallbackIntent]:
        return await self.intents.list_for_charge(charge_id)

    async def _get_intent(self, intent_id: UUID) -> FallbackIntent:
        intent = await self.intents.get(intent_id)
        if intent is None:
            raise NotFound(f"Fallback intent {intent_id} not found")
        return intent

    async def _close(self, intent: FallbackIntent, status: FallbackIntentStatus, now: datetime) -> None:
        intent.status = status
        attempt = await self.attempts.get(intent.attempt_id) if intent.attempt_id else None
        if attempt is not None and attempt.status in (AttemptStatus.PENDING, AttemptStatus.PROCESSING):
            attempt.status = _ATTEMPT_STATUS_BY_INTENT[status]
            attempt.processed_at = now
            attempt.notes = f"Fallback intent {status.value.lower()}"

    async def _mark_paid(self, intent: FallbackIntent, paid_at: datetime) -> None:
        intent.status = FallbackIntentStatus.PAID
        intent.paid_at = paid_at

        attempt = await self.attempts.get(intent.attempt_id) if intent.attempt_id else None
        if attempt is not None and attempt.status != AttemptStatus.PAID:
            attempt.status = AttemptStatus.PAID
            attempt.processed_at = paid_at
            attempt.paid_reference = intent.provider_payment_id

        charge: Optional[Charge] = await self.charges.get(intent.charge_id)
        if charge is None or charge.is_paid:
            await self.db.flush()
            return

        charge.status = ChargeStatus.PAID
        charge.amount_paid = intent.amount
        charge.paid_currency = intent.currency
        charge.paid_at = paid_at
        charge.paid_reference = intent.provider_payment_id
        charge.paid_via_channel = AttemptChannel.FALLBACK.value
        charge.reconciliation_status = ReconciliationStatus.MATCHED
        await self.db.flush()

        # Attempts already presented to the bank stay PROCESSING until its response arrives
        await self.attempts.cancel_later_pending(
            charge.id, 0, paid_at, CANCELED_BY_FALLBACK_NOTE, statuses=(AttemptStatus.PENDING,)
        )
        if charge.cycle_id:
            cycle = await self.charges.get_cycle(charge.cycle_id)
            if cycle is not None and cycle.status != CycleStatus.PAID:
                cycle.status = CycleStatus.PAID
        await log_billing_event(
            self.db,
            "ATTEMPT_MARKED_PAID",
            tenant_id=charge.tenant_id,
            payload={
                "intent_id": intent.id,
                "attempt_id": intent.attempt_id,
                "charge_id": charge.id,
                "paid_reference": intent.provider_payment_id,
                "amount": intent.amount,
                "channel": AttemptChannel.FALLBACK.value,
            },
        )
