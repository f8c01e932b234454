"""Attempt repository."""
from datetime import date, datetime, timedelta
from typing import Iterable, NamedTuple, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.core.dates import local_date, start_of_local_day
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.charge import Charge, ChargeStatus
from agency_billing.models.mandate import Mandate, MandateStatus
from agency_billing.models.payment_method import PaymentMethod
from agency_billing.models.subscription import Subscription

PRESENTMENT_LIMIT = 5000
LATEST_ZONE = "Etc/GMT+12"


class DueAttempt(NamedTuple):
    attempt: Attempt
    charge: Charge
    method: Optional[PaymentMethod]
    mandate: Optional[Mandate]
    timezone: str


class AttemptRepository:
    """Collection attempts per charge."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, attempt_id: UUID) -> Optional[Attempt]:
        return await self.db.get(Attempt, attempt_id)

    async def list_for_charge(self, charge_id: UUID) -> list[Attempt]:
        result = await self.db.execute(
            select(Attempt).where(Attempt.charge_id == charge_id).order_by(Attempt.attempt_no)
        )
        return list(result.scalars().all())

    async def next_attempt_no(self, charge_id: UUID) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(Attempt.attempt_no), 0)).where(Attempt.charge_id == charge_id)
        )
        return int(result.scalar_one()) + 1

    async def add(self, attempt: Attempt) -> Attempt:
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def due_for_presentment(
        self, business_day: date, default_timezone: str, require_active_mandate: bool
    ) -> list[DueAttempt]:
        """
        Pending direct-debit attempts on unpaid charges due by a business day.

        An attempt is due when its scheduled instant falls on ``business_day``
        or earlier in its tenant's own calendar.

        Returns:
            Due attempts with their charge, method, mandate and timezone, oldest first
        """
        # Local midnight after the business day in the westernmost zone bounds every tenant
        upper = start_of_local_day(business_day + timedelta(days=1), LATEST_ZONE)
        query = (
            select(Attempt, Charge, PaymentMethod, Mandate, Subscription.timezone)
            .join(Charge, Charge.id == Attempt.charge_id)
            .outerjoin(Subscription, Subscription.tenant_id == Charge.tenant_id)
            .outerjoin(PaymentMethod, PaymentMethod.id == Attempt.payment_method_id)
            .outerjoin(Mandate, Mandate.payment_method_id == PaymentMethod.id)
            .where(
                Attempt.status == AttemptStatus.PENDING,
                Attempt.channel == AttemptChannel.DIRECT_DEBIT,
                Attempt.scheduled_for < upper,
                Charge.status.not_in([ChargeStatus.PAID, ChargeStatus.CANCELED]),
            )
            .order_by(Attempt.scheduled_for, Attempt.created_at)
            .limit(PRESENTMENT_LIMIT)
        )
        if require_active_mandate:
            query = query.where(Mandate.status == MandateStatus.ACTIVE)

        result = await self.db.execute(query)
        due = []
        for attempt, charge, method, mandate, tz_name in result.all():
            tz_name = tz_name or default_timezone
            if local_date(attempt.scheduled_for, tz_name) <= business_day:
                due.append(DueAttempt(attempt, charge, method, mandate, tz_name))
        return due

    async def cancel_later_pending(
        self,
        charge_id: UUID,
        after_attempt_no: int,
        when: datetime,
        note: str,
        statuses: Iterable[AttemptStatus] = (AttemptStatus.PENDING, AttemptStatus.PROCESSING),
    ) -> int:
        """Cancel attempts after ``after_attempt_no`` still in one of ``statuses``."""
        result = await self.db.execute(
            update(Attempt)
            .where(
                Attempt.charge_id == charge_id,
                Attempt.attempt_no > after_attempt_no,
                Attempt.status.in_(list(statuses)),
            )
            .values(status=AttemptStatus.CANCELED, processed_at=when, notes=note, updated_at=when)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def revert_processing(self, attempt_ids: Iterable[UUID], when: datetime) -> int:
        """Return PROCESSING attempts to PENDING."""
        ids = list(attempt_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            update(Attempt)
            .where(Attempt.id.in_(ids), Attempt.status == AttemptStatus.PROCESSING)
            .values(status=AttemptStatus.PENDING, updated_at=when)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
