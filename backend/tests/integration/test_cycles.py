"""Integration tests for billing cycle materialization and extra charges."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.config import Settings
from agency_billing.errors import InvalidBillingInput, InvalidStateTransition, NotFound
from agency_billing.models.adjustment import AdjustmentKind, AdjustmentMode, BillingAdjustment
from agency_billing.models.attempt import Attempt, AttemptChannel, AttemptStatus
from agency_billing.models.charge import ChargeKind, ChargeStatus
from agency_billing.models.cycle import BillingCycle, CycleStatus
from agency_billing.models.subscription import SubscriptionStatus
from agency_billing.repositories.events import BillingEventRepository
from agency_billing.repositories.subscriptions import SubscriptionRepository
from agency_billing.services.cycle_service import CycleService, recurring_charge_key
from utils.factories import create_billed_tenant, create_mandate, utc

pytestmark = pytest.mark.integration

TENANT_ID = 42
ANCHOR = utc(2024, 4, 10, 3)


@pytest.mark.asyncio
async def test_run_anchor_freezes_cycle_charge_and_attempts(db_session: AsyncSession, settings: Settings) -> None:
    """Test that one anchor run creates the cycle, its charge and the dunning attempts."""
    result = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)

    assert result.cycle_created and result.charge_created
    assert result.attempts_created == 3

    cycle = result.cycle
    assert cycle.status == CycleStatus.FROZEN
    assert cycle.anchor_date == ANCHOR
    assert cycle.period_end == utc(2024, 5, 10, 3)
    assert cycle.total_usd == Decimal("108.90")
    assert cycle.total_local == Decimal("108900.00")
    assert cycle.pricing_snapshot["discount_pct"] == "10.00"
    assert cycle.frozen_at is not None

    charge = result.charge
    assert charge.kind == ChargeKind.RECURRING
    assert charge.status == ChargeStatus.PENDING
    assert charge.amount_due == Decimal("108900.00")
    assert charge.due_date == ANCHOR
    assert charge.idempotency_key == recurring_charge_key(cycle)

    assert [a.attempt_no for a in result.attempts] == [1, 2, 3]
    assert [a.scheduled_for for a in result.attempts] == [ANCHOR, ANCHOR + timedelta(days=2), ANCHOR + timedelta(days=4)]
    assert all(a.channel == AttemptChannel.DIRECT_DEBIT for a in result.attempts)
    assert all(a.status == AttemptStatus.PENDING for a in result.attempts)
    assert all(a.payment_method_id is not None for a in result.attempts)

    subscription = await SubscriptionRepository(db_session).get_by_tenant(TENANT_ID)
    assert subscription.next_anchor_date == utc(2024, 5, 10, 3)

    events = BillingEventRepository(db_session)
    assert await events.count(TENANT_ID, "CYCLE_CREATED") == 1
    assert await events.count(TENANT_ID, "CHARGE_CREATED") == 1
    assert await events.count(TENANT_ID, "ATTEMPTS_SCHEDULED") == 1


@pytest.mark.asyncio
async def test_run_anchor_is_idempotent(db_session: AsyncSession, settings: Settings) -> None:
    """Test that re-running an anchor, at any instant of its local day, creates nothing new."""
    first = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)

    # 23:30 local time on the anchor day
    second = await CycleService(db_session, settings).run_anchor(
        TENANT_ID, utc(2024, 4, 11, 2, 30), fx_rate=Decimal("1200"), base_amount_usd=Decimal("500")
    )

    assert not second.cycle_created
    assert not second.charge_created
    assert second.attempts_created == 0
    assert second.cycle.id == first.cycle.id
    assert second.charge.id == first.charge.id
    # The frozen pricing does not move with a new FX rate
    assert second.cycle.total_local == Decimal("108900.00")

    assert (await db_session.execute(select(func.count(BillingCycle.id)))).scalar_one() == 1
    assert (await db_session.execute(select(func.count(Attempt.id)))).scalar_one() == 3
    assert await BillingEventRepository(db_session).count(TENANT_ID, "CYCLE_CREATED") == 1


@pytest.mark.asyncio
async def test_effective_adjustments_are_priced_into_the_cycle(db_session: AsyncSession, settings: Settings) -> None:
    db_session.add_all(
        [
            BillingAdjustment(
                tenant_id=TENANT_ID, kind=AdjustmentKind.SURCHARGE, mode=AdjustmentMode.PERCENT, value=Decimal("20")
            ),
            # Expired before the anchor
            BillingAdjustment(
                tenant_id=TENANT_ID,
                kind=AdjustmentKind.DISCOUNT,
                mode=AdjustmentMode.PERCENT,
                value=Decimal("50"),
                ends_at=utc(2024, 3, 31),
            ),
        ]
    )
    await db_session.flush()

    result = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR)

    # (100 + 20%) - 10% direct-debit discount = 108.00, plus 21% VAT
    assert result.cycle.total_usd == Decimal("130.68")
    assert len(result.cycle.pricing_snapshot["adjustments"]) == 1


@pytest.mark.asyncio
async def test_pending_mandate_still_gets_attempts_and_discount(db_session: AsyncSession, settings: Settings) -> None:
    result = await create_billed_tenant(db_session, settings, TENANT_ID, ANCHOR, activate=False)

    assert result.attempts_created == 3
    assert result.cycle.total_usd == Decimal("108.90")


@pytest.mark.asyncio
async def test_run_anchor_errors(db_session: AsyncSession, settings: Settings) -> None:
    service = CycleService(db_session, settings)

    with pytest.raises(NotFound):
        await service.run_anchor(7, ANCHOR, fx_rate=1000, base_amount_usd=100)

    await create_mandate(db_session, settings, TENANT_ID, now=ANCHOR)
    with pytest.raises(InvalidBillingInput):
        await service.run_anchor(TENANT_ID, ANCHOR, fx_rate=0, base_amount_usd=100)

    subscription = await SubscriptionRepository(db_session).get_by_tenant(TENANT_ID)
    subscription.status = SubscriptionStatus.CANCELED
    await db_session.flush()
    with pytest.raises(InvalidStateTransition):
        await service.run_anchor(TENANT_ID, ANCHOR, fx_rate=1000, base_amount_usd=100)


@pytest.mark.asyncio
async def test_extra_charge_is_idempotent(db_session: AsyncSession, settings: Settings) -> None:
    """Test that extra charges are keyed by their idempotency key."""
    await create_mandate(db_session, settings, TENANT_ID, now=ANCHOR)
    service = CycleService(db_session, settings)

    charge, created = await service.create_extra_charge(
        TENANT_ID, Decimal("2500.555"), utc(2024, 4, 20, 3), "Extra landing page", "extra:42:landing"
    )
    again, created_again = await service.create_extra_charge(
        TENANT_ID, Decimal("9999"), utc(2024, 4, 20, 3), "Different", "extra:42:landing"
    )

    assert created and not created_again
    assert again.id == charge.id
    assert charge.kind == ChargeKind.EXTRA
    assert charge.cycle_id is None
    assert charge.amount_due == Decimal("2500.56")
    assert await BillingEventRepository(db_session).count(TENANT_ID, "CHARGE_CREATED") == 1

    with pytest.raises(InvalidBillingInput):
        await service.create_extra_charge(TENANT_ID, 0, utc(2024, 4, 20, 3), "Nothing", "extra:42:zero")
