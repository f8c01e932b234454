"""Unit tests for tenant-local calendar arithmetic."""
from datetime import date, datetime

import pytest

from agency_billing.core.dates import (
    add_days_local,
    anchor_date_for_month,
    compute_next_anchor_date,
    full_days_between_local,
    local_date,
    next_anchor_after,
    normalize_local_day,
    start_of_local_day,
)
from agency_billing.errors import InvalidBillingInput
from utils.factories import utc

BA = "America/Argentina/Buenos_Aires"


def test_start_of_local_day_is_local_midnight() -> None:
    """Test that local midnight in Buenos Aires is 03:00 UTC."""
    assert start_of_local_day(date(2024, 4, 10), BA) == utc(2024, 4, 10, 3)


def test_local_date_uses_tenant_timezone() -> None:
    # 02:00 UTC is still the previous evening in Buenos Aires
    assert local_date(utc(2024, 4, 11, 2), BA) == date(2024, 4, 10)
    assert normalize_local_day(utc(2024, 4, 11, 2), BA) == utc(2024, 4, 10, 3)


def test_next_anchor_later_this_month() -> None:
    assert compute_next_anchor_date(utc(2024, 3, 5, 12), 10, BA) == utc(2024, 3, 10, 3)


def test_next_anchor_rolls_to_next_month() -> None:
    assert compute_next_anchor_date(utc(2024, 3, 15), 10, BA) == utc(2024, 4, 10, 3)


def test_anchor_day_itself_is_not_passed() -> None:
    """Test that the anchor date is returned on the anchor day itself."""
    assert compute_next_anchor_date(utc(2024, 4, 10, 20), 10, BA) == utc(2024, 4, 10, 3)
    # Late evening local time on the anchor day, already the next day in UTC
    assert compute_next_anchor_date(utc(2024, 4, 11, 2, 30), 10, BA) == utc(2024, 4, 10, 3)


def test_next_anchor_rolls_over_year() -> None:
    assert compute_next_anchor_date(utc(2024, 12, 20), 10, BA) == utc(2025, 1, 10, 3)


def test_next_anchor_after_and_month_anchor() -> None:
    assert next_anchor_after(utc(2024, 1, 28, 3), 28, BA) == utc(2024, 2, 28, 3)
    assert anchor_date_for_month(utc(2024, 2, 3), 28, BA) == utc(2024, 2, 28, 3)


@pytest.mark.parametrize("anchor_day", [0, 29, 31])
def test_anchor_day_out_of_range(anchor_day: int) -> None:
    with pytest.raises(InvalidBillingInput):
        compute_next_anchor_date(utc(2024, 3, 15), anchor_day, BA)


def test_naive_datetimes_are_rejected() -> None:
    with pytest.raises(InvalidBillingInput):
        compute_next_anchor_date(datetime(2024, 3, 15), 10, BA)


def test_unknown_timezone() -> None:
    with pytest.raises(InvalidBillingInput):
        compute_next_anchor_date(utc(2024, 3, 15), 10, "Mars/Olympus_Mons")


def test_add_days_and_full_days_between() -> None:
    """Test that day arithmetic follows local calendar days."""
    anchor = utc(2024, 4, 10, 3)

    assert add_days_local(anchor, 2, BA) == utc(2024, 4, 12, 3)
    assert add_days_local(utc(2024, 4, 11, 2), 1, BA) == utc(2024, 4, 11, 3)
    assert full_days_between_local(anchor, utc(2024, 4, 11, 2, 59), BA) == 0
    assert full_days_between_local(anchor, utc(2024, 4, 11, 3), BA) == 1
    assert full_days_between_local(anchor, utc(2024, 4, 25, 3), BA) == 15


NEW_YORK = "America/New_York"
KIRITIMATI = "Pacific/Kiritimati"
PAGO_PAGO = "Pacific/Pago_Pago"


def test_anchor_across_spring_forward() -> None:
    """Test that anchors either side of the DST change land on local midnight."""
    # DST starts 2024-03-10 at 02:00, after midnight of the 10th
    assert compute_next_anchor_date(utc(2024, 3, 5, 12), 10, NEW_YORK) == utc(2024, 3, 10, 5)
    assert compute_next_anchor_date(utc(2024, 3, 5, 12), 15, NEW_YORK) == utc(2024, 3, 15, 4)
    assert next_anchor_after(utc(2024, 2, 10, 5), 10, NEW_YORK) == utc(2024, 3, 10, 5)
    assert next_anchor_after(utc(2024, 3, 10, 5), 10, NEW_YORK) == utc(2024, 4, 10, 4)


def test_add_days_across_dst_changes() -> None:
    # Two local days across spring forward are only 47 hours
    assert add_days_local(utc(2024, 3, 9, 5), 2, NEW_YORK) == utc(2024, 3, 11, 4)
    # and one across fall back is 25 hours
    assert add_days_local(utc(2024, 11, 3, 4), 1, NEW_YORK) == utc(2024, 11, 4, 5)


def test_full_days_across_dst_counts_calendar_days() -> None:
    # 47 elapsed hours are still two local days
    assert full_days_between_local(utc(2024, 3, 9, 5), utc(2024, 3, 11, 4), NEW_YORK) == 2
    assert full_days_between_local(utc(2024, 11, 3, 4), utc(2024, 11, 4, 4, 59), NEW_YORK) == 0


def test_timezones_either_side_of_the_date_line() -> None:
    """Test the same instants in UTC+14 and UTC-11."""
    assert local_date(utc(2024, 4, 9, 10), KIRITIMATI) == date(2024, 4, 10)
    assert local_date(utc(2024, 4, 9, 10), PAGO_PAGO) == date(2024, 4, 8)

    assert compute_next_anchor_date(utc(2024, 4, 9, 12), 10, KIRITIMATI) == utc(2024, 4, 9, 10)
    assert compute_next_anchor_date(utc(2024, 4, 10, 10), 10, PAGO_PAGO) == utc(2024, 4, 10, 11)
    # 23:00 on the anchor day in Pago Pago is still the anchor day
    assert compute_next_anchor_date(utc(2024, 4, 11, 10), 10, PAGO_PAGO) == utc(2024, 4, 10, 11)

    assert add_days_local(utc(2024, 4, 9, 10), 2, KIRITIMATI) == utc(2024, 4, 11, 10)
    assert full_days_between_local(utc(2024, 4, 9, 10), utc(2024, 4, 10, 9, 59), KIRITIMATI) == 0
    assert full_days_between_local(utc(2024, 4, 9, 10), utc(2024, 4, 10, 9, 59), PAGO_PAGO) == 1
