"""Tenant-local calendar arithmetic.

All day arithmetic happens on local calendar dates of the tenant's timezone
and is converted back to the UTC instant of local midnight, never on UTC
midnight.
"""
import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agency_billing.errors import InvalidBillingInput


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA timezone name."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidBillingInput(f"Unknown timezone: {tz_name}") from e


def _check_anchor_day(anchor_day: int) -> None:
    if not isinstance(anchor_day, int) or not 1 <= anchor_day <= 28:
        raise InvalidBillingInput("anchor_day must be between 1 and 28")


def _require_aware(dt: datetime) -> None:
    if dt.tzinfo is None:
        raise InvalidBillingInput("Datetime must be timezone-aware")


def local_date(dt: datetime, tz_name: str) -> date:
    """Calendar date of an instant in the given timezone."""
    _require_aware(dt)
    return dt.astimezone(get_zone(tz_name)).date()


def start_of_local_day(day: date, tz_name: str) -> datetime:
    """UTC instant of local midnight of a calendar date."""
    return datetime.combine(day, time.min, tzinfo=get_zone(tz_name)).astimezone(timezone.utc)


def normalize_local_day(dt: datetime, tz_name: str) -> datetime:
    """Truncate an instant to local midnight of its day."""
    return start_of_local_day(local_date(dt, tz_name), tz_name)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _add_months(day: date, months: int, anchor_day: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return _clamped(index // 12, index % 12 + 1, anchor_day)


def anchor_date_for_month(dt: datetime, anchor_day: int, tz_name: str) -> datetime:
    """Anchor date in the local month containing ``dt``."""
    _check_anchor_day(anchor_day)
    today = local_date(dt, tz_name)
    return start_of_local_day(_clamped(today.year, today.month, anchor_day), tz_name)


def next_anchor_after(anchor: datetime, anchor_day: int, tz_name: str) -> datetime:
    """Anchor date one month after the given anchor."""
    _check_anchor_day(anchor_day)
    return start_of_local_day(_add_months(local_date(anchor, tz_name), 1, anchor_day), tz_name)


def compute_next_anchor_date(now: datetime, anchor_day: int, tz_name: str) -> datetime:
    """
    Next occurrence of the anchor day in the tenant's local calendar.

    Today's anchor counts as not yet passed. Rolls to the following month
    otherwise, clamping to the last day of shorter months.

    Args:
        now: Current instant (timezone-aware)
        anchor_day: Day of month, 1-28
        tz_name: IANA timezone of the tenant

    Returns:
        UTC instant of local midnight of the next anchor date

    Raises:
        InvalidBillingInput: If anchor_day or timezone is invalid
    """
    _check_anchor_day(anchor_day)
    today = local_date(now, tz_name)
    candidate = _clamped(today.year, today.month, anchor_day)
    if candidate < today:
        candidate = _add_months(candidate, 1, anchor_day)
    return start_of_local_day(candidate, tz_name)


def add_days_local(dt: datetime, days: int, tz_name: str) -> datetime:
    """Local midnight ``days`` calendar days after the local day of ``dt``."""
    return start_of_local_day(local_date(dt, tz_name) + timedelta(days=days), tz_name)


def full_days_between_local(start: datetime, end: datetime, tz_name: str) -> int:
    """Whole local calendar days from the day of ``start`` to the day of ``end``."""
    return (local_date(end, tz_name) - local_date(start, tz_name)).days
