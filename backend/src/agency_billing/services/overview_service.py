"""Overview service: collection status of a tenant's subscription."""
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.config import Settings
from agency_billing.core.dates import compute_next_anchor_date, normalize_local_day
from agency_billing.core.overview import OverviewAttempt, OverviewFlags, OverviewStatus, compute_overview_status
from agency_billing.models.subscription import SubscriptionStatus
from agency_billing.repositories.attempts import AttemptRepository
from agency_billing.repositories.charges import ChargeRepository
from agency_billing.repositories.mandates import MandateRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository
from agency_billing.schemas.overview import AttemptSummary, ChargeSummary, CycleSummary, SubscriptionOverview

logger = structlog.get_logger(__name__)


class OverviewService:
    """Read-only service computing the dunning overview."""

    def __init__(self, db: AsyncSession, settings: Settings):
        """Initialize overview service."""
        self.db = db
        self.settings = settings
        self.subscriptions = SubscriptionRepository(db)
        self.charges = ChargeRepository(db)
        self.attempts = AttemptRepository(db)
        self.mandates = MandateRepository(db)

    async def get_overview(self, tenant_id: int, now: datetime) -> SubscriptionOverview:
        """
        Get the collection overview of a tenant.

        Args:
            tenant_id: Tenant ID
            now: Current instant (timezone-aware)

        Returns:
            Status, flags, the current cycle with its charge and attempts,
            and the default payment method
        """
        retry_days = list(self.settings.dunning_retry_offsets_days)
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            return SubscriptionOverview(
                status=OverviewStatus.ACTIVE,
                next_anchor_date=compute_next_anchor_date(
                    now, self.settings.anchor_day_default, self.settings.timezone_default
                ),
                retry_days=retry_days,
            )

        method = await self.mandates.get_default_method(subscription.id)
        mandate = await self.mandates.get_mandate_for_method(method.id) if method else None

        today = normalize_local_day(now, subscription.timezone)
        cycle = await self.charges.get_current_cycle(subscription.id, today)
        charge = await self.charges.latest_for_cycle(cycle.id) if cycle else None
        attempts = await self.attempts.list_for_charge(charge.id) if charge else []

        computed = compute_overview_status(
            now=now,
            timezone=subscription.timezone,
            anchor_date=cycle.anchor_date if cycle else None,
            has_charge=charge is not None,
            charge_status=charge.status if charge else None,
            charge_paid_at=charge.paid_at if charge else None,
            attempts=[
                OverviewAttempt(attempt_no=a.attempt_no, status=a.status.value, scheduled_for=a.scheduled_for)
                for a in attempts
            ],
            suspend_after_days=self.settings.suspend_after_days,
        )

        status = computed.status
        flags = computed.flags
        if subscription.status == SubscriptionStatus.CANCELED:
            status = OverviewStatus.CANCELED
            flags = OverviewFlags(retries_exhausted=flags.retries_exhausted)

        logger.debug("overview_computed", tenant_id=tenant_id, status=status.value)
        return SubscriptionOverview(
            status=status,
            next_anchor_date=subscription.next_anchor_date,
            retry_days=retry_days,
            method_type=method.method_type if method else None,
            mandate_status=mandate.status if mandate else None,
            current_cycle=CycleSummary.model_validate(cycle) if cycle else None,
            current_charge=ChargeSummary.model_validate(charge) if charge else None,
            attempts=[AttemptSummary.model_validate(a) for a in attempts],
            next_attempt_at=computed.next_attempt_at,
            flags=flags,
        )
