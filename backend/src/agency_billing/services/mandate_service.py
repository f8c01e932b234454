"""Mandate service for direct-debit authorizations and payment methods."""
from datetime import datetime
from typing import NamedTuple, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.auth.context import BillingContext
from agency_billing.config import Settings
from agency_billing.core.dates import compute_next_anchor_date, normalize_local_day
from agency_billing.core.vault import SecretsVault, account_last4, hash_account, validate_account_number
from agency_billing.errors import ConsentRequired, InvalidBillingInput, NotFound
from agency_billing.metrics import mandate_transitions_total, mandates_upserted_total
from agency_billing.models.base import utcnow
from agency_billing.models.mandate import Mandate, MandateStatus
from agency_billing.models.payment_method import PaymentMethod, PaymentMethodStatus, PaymentMethodType
from agency_billing.models.subscription import Subscription, SubscriptionStatus
from agency_billing.repositories.mandates import MandateRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository
from agency_billing.utils.audit import log_billing_event

logger = structlog.get_logger(__name__)

DEFAULT_CONSENT_VERSION = "v1"


class MandateUpsertResult(NamedTuple):
    subscription: Subscription
    payment_method: PaymentMethod
    mandate: Mandate
    created: bool


class MandateService:
    """Service for direct-debit mandates and the subscription they belong to."""

    def __init__(self, db: AsyncSession, settings: Settings, vault: Optional[SecretsVault] = None):
        """Initialize mandate service."""
        self.db = db
        self.settings = settings
        self.vault = vault or SecretsVault(settings.secrets_key)
        self.subscriptions = SubscriptionRepository(db)
        self.mandates = MandateRepository(db)

    async def ensure_subscription(self, tenant_id: int, now: datetime) -> Subscription:
        """
        Get the tenant's subscription, creating it from configured defaults.

        An existing subscription whose next anchor date is missing or already
        past gets it recomputed.
        """
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            subscription = Subscription(
                tenant_id=tenant_id,
                status=SubscriptionStatus.ACTIVE,
                anchor_day=self.settings.anchor_day_default,
                timezone=self.settings.timezone_default,
                direct_debit_discount_pct=self.settings.direct_debit_discount_pct,
                next_anchor_date=compute_next_anchor_date(
                    now, self.settings.anchor_day_default, self.settings.timezone_default
                ),
            )
            await self.subscriptions.add(subscription)
            logger.info("subscription_created", tenant_id=tenant_id, subscription_id=str(subscription.id))
            return subscription

        today = normalize_local_day(now, subscription.timezone)
        if subscription.next_anchor_date is None or subscription.next_anchor_date < today:
            subscription.next_anchor_date = compute_next_anchor_date(
                now, subscription.anchor_day, subscription.timezone
            )
            await self.db.flush()
        return subscription

    async def upsert_direct_debit_mandate(
        self,
        ctx: BillingContext,
        holder_name: str,
        tax_id: str,
        account_number: str,
        consent_ip: Optional[str],
        consent_accepted: bool = True,
        consent_version: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MandateUpsertResult:
        """
        Create or replace the tenant's direct-debit mandate.

        Makes the DIRECT_DEBIT method the only default, stores a freshly
        encrypted account number and records the audit events. Runs inside the
        caller's transaction; nothing is committed here.

        Args:
            ctx: Resolved caller context
            holder_name: Account holder name
            tax_id: Holder tax identifier
            account_number: 22-digit bank account number
            consent_ip: Address the consent was given from
            consent_accepted: Whether the mandate text was accepted
            consent_version: Version of the accepted mandate text
            now: Current instant, for tests

        Returns:
            Subscription, payment method, mandate and whether it was created

        Raises:
            ConsentRequired: If consent was not accepted
            InvalidAccountNumber: If the account number fails validation
            InvalidBillingInput: If holder data is missing
        """
        if ctx.tenant_id is None:
            raise InvalidBillingInput("Caller is not bound to a tenant")
        if not consent_accepted:
            raise ConsentRequired()

        holder_name = (holder_name or "").strip()
        tax_id = "".join(ch for ch in (tax_id or "") if ch.isdigit())
        if len(holder_name) < 2:
            raise InvalidBillingInput("Holder name is required")
        if len(tax_id) < 7:
            raise InvalidBillingInput("Holder tax id is invalid")
        digits = validate_account_number(account_number)

        now = now or utcnow()
        subscription = await self.ensure_subscription(ctx.tenant_id, now)

        await self.mandates.clear_defaults(subscription.id)
        method = await self.mandates.get_method(subscription.id, PaymentMethodType.DIRECT_DEBIT)
        if method is None:
            method = PaymentMethod(subscription_id=subscription.id, method_type=PaymentMethodType.DIRECT_DEBIT)
        method.status = PaymentMethodStatus.PENDING
        method.is_default = True
        method.holder_name = holder_name
        method.holder_tax_id = tax_id
        await self.mandates.add_method(method)

        mandate = await self.mandates.get_mandate_for_method(method.id)
        created = mandate is None
        previous_status = None if created else mandate.status
        if created:
            mandate = Mandate(payment_method_id=method.id)

        mandate.status = MandateStatus.PENDING
        mandate.account_encrypted = self.vault.encrypt(digits)
        mandate.account_last4 = account_last4(digits)
        mandate.account_hash = hash_account(digits)
        mandate.consent_version = consent_version or DEFAULT_CONSENT_VERSION
        mandate.consent_accepted_at = now
        mandate.consent_ip = consent_ip
        mandate.bank_reference = None
        mandate.rejection_code = None
        mandate.rejection_reason = None
        mandate.revoked_at = None
        mandate.last_status_check_at = now
        await self.mandates.add_mandate(mandate)

        await log_billing_event(
            self.db,
            "MANDATE_CREATED" if created else "MANDATE_UPDATED",
            tenant_id=ctx.tenant_id,
            subscription_id=subscription.id,
            payload={
                "mandate_id": mandate.id,
                "payment_method_id": method.id,
                "previous_status": previous_status,
                "new_status": mandate.status,
                "account_last4": mandate.account_last4,
                "consent_version": mandate.consent_version,
            },
            actor_id=ctx.actor_id,
        )
        await log_billing_event(
            self.db,
            "SUBSCRIPTION_UPDATED",
            tenant_id=ctx.tenant_id,
            subscription_id=subscription.id,
            payload={
                "anchor_day": subscription.anchor_day,
                "timezone": subscription.timezone,
                "direct_debit_discount_pct": subscription.direct_debit_discount_pct,
                "next_anchor_date": subscription.next_anchor_date,
                "default_method_type": method.method_type,
            },
            actor_id=ctx.actor_id,
        )

        mandates_upserted_total.labels(outcome="created" if created else "updated").inc()
        logger.info(
            "mandate_upserted",
            tenant_id=ctx.tenant_id,
            mandate_id=str(mandate.id),
            created=created,
        )
        return MandateUpsertResult(subscription, method, mandate, created)

    async def transition_mandate_status(
        self,
        mandate_id: UUID,
        new_status: MandateStatus,
        actor_id: Optional[str] = None,
        reason_code: Optional[str] = None,
        reason_text: Optional[str] = None,
        bank_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Mandate:
        """
        Move a mandate to a new status as reported by the bank or an operator.

        Args:
            mandate_id: Mandate UUID
            new_status: Target status
            actor_id: User or job applying the change
            reason_code: Bank rejection code (REJECTED only)
            reason_text: Rejection description (REJECTED only)
            bank_reference: Bank-side mandate reference

        Returns:
            Updated mandate

        Raises:
            NotFound: If the mandate does not exist
        """
        now = now or utcnow()
        mandate = await self.mandates.get_mandate(mandate_id)
        if mandate is None:
            raise NotFound(f"Mandate {mandate_id} not found")
        method = await self.db.get(PaymentMethod, mandate.payment_method_id)
        subscription = await self.subscriptions.get(method.subscription_id)

        previous_status = mandate.status
        mandate.status = new_status
        mandate.last_status_check_at = now
        if bank_reference and bank_reference.strip():
            mandate.bank_reference = bank_reference.strip()

        if new_status == MandateStatus.REJECTED:
            mandate.rejection_code = (reason_code or "").strip() or None
            mandate.rejection_reason = (reason_text or "").strip() or None
        else:
            mandate.rejection_code = None
            mandate.rejection_reason = None

        if new_status == MandateStatus.ACTIVE:
            mandate.activated_at = mandate.activated_at or now
            method.status = PaymentMethodStatus.ACTIVE
        elif new_status == MandateStatus.REVOKED:
            mandate.revoked_at = mandate.revoked_at or now
            method.status = PaymentMethodStatus.DISABLED
        elif new_status == MandateStatus.REJECTED:
            method.status = PaymentMethodStatus.DISABLED
        await self.db.flush()

        payload = {
            "mandate_id": mandate.id,
            "previous_status": previous_status,
            "new_status": new_status,
            "reason_code": mandate.rejection_code,
            "reason_text": mandate.rejection_reason,
        }
        if previous_status != new_status:
            await log_billing_event(
                self.db,
                "MANDATE_STATUS_CHANGED",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                payload=payload,
                actor_id=actor_id,
            )
            mandate_transitions_total.labels(status=new_status.value).inc()
        if new_status == MandateStatus.REJECTED:
            await log_billing_event(
                self.db,
                "MANDATE_REJECTED",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                payload=payload,
                actor_id=actor_id,
            )
        elif new_status == MandateStatus.REVOKED:
            await log_billing_event(
                self.db,
                "MANDATE_REVOKED",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                payload=payload,
                actor_id=actor_id,
            )

        logger.info(
            "mandate_status_transitioned",
            mandate_id=str(mandate.id),
            previous_status=previous_status.value,
            new_status=new_status.value,
        )
        return mandate

    async def get_tenant_mandate(self, tenant_id: int) -> Optional[Mandate]:
        """Mandate of the tenant's DIRECT_DEBIT method, if any."""
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            return None
        method = await self.mandates.get_method(subscription.id, PaymentMethodType.DIRECT_DEBIT)
        if method is None:
            return None
        return await self.mandates.get_mandate_for_method(method.id)

    def reveal_account_number(self, mandate: Mandate) -> str:
        """Decrypt the stored account number for file generation by the bank channel."""
        return self.vault.decrypt(mandate.account_encrypted)
