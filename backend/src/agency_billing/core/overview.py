"""Dunning overview state machine.

Derives a tenant's collection status from its current cycle, charge and
attempts. Pure: no I/O, all day arithmetic on the tenant's local calendar.
"""
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel

from agency_billing.core.dates import add_days_local, full_days_between_local


class OverviewStatus(str, Enum):
    """Collection status reported to the tenant."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"


class OverviewAttempt(BaseModel):
    """Attempt fields the overview needs."""

    attempt_no: int
    status: str
    scheduled_for: Optional[datetime] = None


class OverviewFlags(BaseModel):
    """Collection flags."""

    in_collection: bool = False
    is_past_due: bool = False
    is_suspended: bool = False
    retries_exhausted: bool = False


class OverviewComputed(BaseModel):
    """Result of compute_overview_status."""

    status: OverviewStatus
    flags: OverviewFlags
    next_attempt_at: Optional[datetime] = None


def _normalize_status(status) -> str:
    value = getattr(status, "value", status)
    return str(value or "").strip().upper()


def is_charge_paid(charge_status, charge_paid_at: Optional[datetime]) -> bool:
    """A charge counts as paid when paid_at is set or its status is PAID."""
    return charge_paid_at is not None or _normalize_status(charge_status) == "PAID"


def _schedule(attempts: Iterable[OverviewAttempt], now: datetime) -> tuple[Optional[datetime], bool]:
    pending = sorted(
        (a for a in attempts if _normalize_status(a.status) == "PENDING" and a.scheduled_for is not None),
        key=lambda a: a.attempt_no,
    )
    if not pending:
        return None, False

    upcoming = sorted(a.scheduled_for for a in pending if a.scheduled_for >= now)
    if upcoming:
        return upcoming[0], False
    return pending[-1].scheduled_for, True


def compute_overview_status(
    now: datetime,
    timezone: str,
    anchor_date: Optional[datetime],
    has_charge: bool,
    charge_status,
    charge_paid_at: Optional[datetime],
    attempts: Iterable[OverviewAttempt],
    suspend_after_days: int,
) -> OverviewComputed:
    """
    Compute the collection status of a tenant.

    Args:
        now: Current instant (timezone-aware)
        timezone: Tenant IANA timezone
        anchor_date: Anchor date of the current cycle, if any
        has_charge: Whether the current cycle has a charge
        charge_status: Status of that charge
        charge_paid_at: Settlement time of that charge
        attempts: Attempts of that charge
        suspend_after_days: Days after the anchor before suspension

    Returns:
        Status, flags and the next attempt time
    """
    next_attempt_at, retries_exhausted = _schedule(list(attempts), now)

    if anchor_date is None or not has_charge or is_charge_paid(charge_status, charge_paid_at):
        return OverviewComputed(
            status=OverviewStatus.ACTIVE,
            flags=OverviewFlags(retries_exhausted=retries_exhausted),
            next_attempt_at=next_attempt_at,
        )

    is_past_due = now >= add_days_local(anchor_date, 1, timezone)
    days_since_anchor = full_days_between_local(anchor_date, now, timezone)
    is_suspended = days_since_anchor >= max(1, suspend_after_days)

    if is_suspended:
        status = OverviewStatus.SUSPENDED
    elif is_past_due:
        status = OverviewStatus.PAST_DUE
    else:
        status = OverviewStatus.ACTIVE

    return OverviewComputed(
        status=status,
        flags=OverviewFlags(
            in_collection=True,
            is_past_due=is_past_due,
            is_suspended=is_suspended,
            retries_exhausted=retries_exhausted,
        ),
        next_attempt_at=next_attempt_at,
    )
