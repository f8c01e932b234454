"""Cycle service: materializes billing cycles, charges and scheduled attempts."""
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.config import Settings
from agency_billing.core.dates import add_days_local, normalize_local_day, next_anchor_after
from agency_billing.core.pricing import build_pricing_snapshot, round2
from agency_billing.errors import InvalidBillingInput, InvalidStateTransition, NotFound
from agency_billing.metrics import cycles_materialized_total
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.base import utcnow
from agency_billing.models.charge import Charge, ChargeKind, ChargeStatus
from agency_billing.models.cycle import BillingCycle, CycleStatus
from agency_billing.models.payment_method import PaymentMethodType
from agency_billing.models.subscription import SubscriptionStatus
from agency_billing.repositories.adjustments import AdjustmentRepository
from agency_billing.repositories.attempts import AttemptRepository
from agency_billing.repositories.charges import ChargeRepository
from agency_billing.repositories.mandates import MandateRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository
from agency_billing.utils.audit import log_billing_event

logger = structlog.get_logger(__name__)


class CycleRunResult(NamedTuple):
    cycle: BillingCycle
    charge: Charge
    attempts: list[Attempt]
    cycle_created: bool
    charge_created: bool
    attempts_created: int


def recurring_charge_key(cycle: BillingCycle) -> str:
    return f"cycle:{cycle.id}:recurring"


class CycleService:
    """Service turning a subscription's anchor dates into cycles and charges."""

    def __init__(self, db: AsyncSession, settings: Settings):
        """Initialize cycle service."""
        self.db = db
        self.settings = settings
        self.subscriptions = SubscriptionRepository(db)
        self.charges = ChargeRepository(db)
        self.attempts = AttemptRepository(db)
        self.mandates = MandateRepository(db)
        self.adjustments = AdjustmentRepository(db)

    async def run_anchor(
        self,
        tenant_id: int,
        anchor_date: datetime,
        fx_rate,
        base_amount_usd,
        fx_rate_date: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> CycleRunResult:
        """
        Materialize the cycle, charge and attempts for one anchor date.

        Safe to call repeatedly: existing rows are reused and only what is
        missing gets created.

        Args:
            tenant_id: Tenant to bill
            anchor_date: Anchor date of the cycle (any instant of that local day)
            fx_rate: Local currency per USD used to freeze the cycle
            base_amount_usd: Plan price before adjustments
            fx_rate_date: Date of the FX quote
            actor_id: Job or user running the cycle

        Returns:
            Cycle, charge, attempts and what was created

        Raises:
            NotFound: If the tenant has no subscription
            InvalidStateTransition: If the subscription is canceled
        """
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            raise NotFound(f"Tenant {tenant_id} has no subscription")
        if subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidStateTransition(f"Subscription of tenant {tenant_id} is canceled")
        if Decimal(str(fx_rate)) <= 0:
            raise InvalidBillingInput("fx_rate must be positive")

        tz = subscription.timezone
        anchor = normalize_local_day(anchor_date, tz)
        default_method = await self.mandates.get_default_method(subscription.id)

        cycle = await self.charges.get_cycle_for_anchor(subscription.id, anchor)
        cycle_created = cycle is None
        if cycle_created:
            adjustments = await self.adjustments.effective_on(tenant_id, anchor)
            snapshot = build_pricing_snapshot(
                base_amount_usd=base_amount_usd,
                adjustments=adjustments,
                method_type=default_method.method_type if default_method else None,
                discount_pct=subscription.direct_debit_discount_pct,
                vat_rate=self.settings.vat_rate,
                fx_rate=fx_rate,
                fx_rate_date=fx_rate_date,
            )
            now = utcnow()
            cycle = BillingCycle(
                subscription_id=subscription.id,
                tenant_id=tenant_id,
                anchor_date=anchor,
                period_start=anchor,
                period_end=next_anchor_after(anchor, subscription.anchor_day, tz),
                status=CycleStatus.FROZEN,
                fx_rate=snapshot.fx_rate,
                fx_rate_date=fx_rate_date or now,
                total_usd=snapshot.total_usd,
                total_local=snapshot.total_local,
                pricing_snapshot=snapshot.model_dump(mode="json"),
                frozen_at=now,
            )
            await self.charges.add_cycle(cycle)
            cycles_materialized_total.inc()
            await log_billing_event(
                self.db,
                "CYCLE_CREATED",
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                payload={
                    "cycle_id": cycle.id,
                    "anchor_date": anchor,
                    "total_usd": cycle.total_usd,
                    "total_local": cycle.total_local,
                    "fx_rate": cycle.fx_rate,
                },
                actor_id=actor_id,
            )

        charge = await self.charges.get_by_idempotency_key(recurring_charge_key(cycle))
        charge_created = charge is None
        if charge_created:
            charge = Charge(
                tenant_id=tenant_id,
                cycle_id=cycle.id,
                kind=ChargeKind.RECURRING,
                status=ChargeStatus.PENDING,
                due_date=anchor,
                amount_due=round2(cycle.total_local),
                idempotency_key=recurring_charge_key(cycle),
            )
            await self.charges.add(charge)
            await log_billing_event(
                self.db,
                "CHARGE_CREATED",
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                payload={"charge_id": charge.id, "cycle_id": cycle.id, "amount_due": charge.amount_due},
                actor_id=actor_id,
            )

        attempts, attempts_created = await self._schedule_attempts(charge, anchor, default_method, tz)
        if attempts_created:
            await log_billing_event(
                self.db,
                "ATTEMPTS_SCHEDULED",
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                payload={
                    "charge_id": charge.id,
                    "scheduled": [{"attempt_no": a.attempt_no, "scheduled_for": a.scheduled_for} for a in attempts],
                },
                actor_id=actor_id,
            )

        upcoming = next_anchor_after(anchor, subscription.anchor_day, tz)
        if subscription.next_anchor_date is None or subscription.next_anchor_date < upcoming:
            subscription.next_anchor_date = upcoming
            await self.db.flush()

        logger.info(
            "cycle_run_completed",
            tenant_id=tenant_id,
            cycle_id=str(cycle.id),
            cycle_created=cycle_created,
            charge_created=charge_created,
            attempts_created=attempts_created,
        )
        return CycleRunResult(cycle, charge, attempts, cycle_created, charge_created, attempts_created)

    async def _schedule_attempts(self, charge: Charge, anchor: datetime, default_method, tz: str):
        existing = {a.attempt_no: a for a in await self.attempts.list_for_charge(charge.id)}
        if charge.status in (ChargeStatus.PAID, ChargeStatus.CANCELED):
            return sorted(existing.values(), key=lambda a: a.attempt_no), 0

        channel = AttemptChannel.DIRECT_DEBIT
        if default_method is not None and default_method.method_type != PaymentMethodType.DIRECT_DEBIT:
            channel = AttemptChannel.FALLBACK

        created = 0
        for attempt_no, offset in enumerate(self.settings.dunning_retry_offsets_days, start=1):
            if attempt_no in existing:
                continue
            attempt = Attempt(
                charge_id=charge.id,
                attempt_no=attempt_no,
                channel=channel,
                status=AttemptStatus.PENDING,
                scheduled_for=add_days_local(anchor, offset, tz),
                payment_method_id=default_method.id if default_method else None,
            )
            await self.attempts.add(attempt)
            existing[attempt_no] = attempt
            created += 1
        return sorted(existing.values(), key=lambda a: a.attempt_no), created

    async def create_extra_charge(
        self,
        tenant_id: int,
        amount,
        due_date: datetime,
        reason: str,
        idempotency_key: str,
        actor_id: Optional[str] = None,
    ) -> tuple[Charge, bool]:
        """
        Create an ad-hoc charge outside the cycle.

        Returns:
            The charge and whether it was created by this call
        """
        existing = await self.charges.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            return existing, False

        amount = round2(amount)
        if amount <= 0:
            raise InvalidBillingInput("Extra charge amount must be positive")
        subscription = await self.subscriptions.get_by_tenant(tenant_id)

        charge = Charge(
            tenant_id=tenant_id,
            cycle_id=None,
            kind=ChargeKind.EXTRA,
            status=ChargeStatus.PENDING,
            due_date=due_date,
            amount_due=amount,
            description=reason,
            idempotency_key=idempotency_key,
        )
        await self.charges.add(charge)
        await log_billing_event(
            self.db,
            "CHARGE_CREATED",
            tenant_id=tenant_id,
            subscription_id=subscription.id if subscription else None,
            payload={"charge_id": charge.id, "kind": charge.kind, "amount_due": amount, "reason": reason},
            actor_id=actor_id,
        )
        logger.info("extra_charge_created", tenant_id=tenant_id, charge_id=str(charge.id))
        return charge, True
