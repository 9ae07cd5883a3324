from datetime import date

import pytest

from case_governor.rules import BusinessCalendar

FRIDAY = date(2024, 3, 1)


def test_add_business_days_skips_weekend():
    calendar = BusinessCalendar()

    assert calendar.add_business_days(FRIDAY, 1) == date(2024, 3, 4)
    assert calendar.add_business_days(FRIDAY, 5) == date(2024, 3, 8)
    assert calendar.add_business_days(FRIDAY, 0) == FRIDAY


def test_add_business_days_skips_holidays():
    calendar = BusinessCalendar.from_dates([date(2024, 3, 4), date(2024, 3, 5)])

    assert calendar.add_business_days(FRIDAY, 1) == date(2024, 3, 6)
    assert calendar.is_holiday(date(2024, 3, 4))
    assert not calendar.is_business_day(date(2024, 3, 5))


def test_negative_offsets_move_backwards():
    calendar = BusinessCalendar()

    assert calendar.add_business_days(date(2024, 3, 4), -1) == FRIDAY


def test_next_business_day_and_counting():
    calendar = BusinessCalendar()

    assert calendar.next_business_day(date(2024, 3, 2)) == date(2024, 3, 4)
    assert calendar.next_business_day(FRIDAY) == FRIDAY
    assert calendar.business_days_between(FRIDAY, date(2024, 3, 8)) == 5
    assert calendar.business_days_between(date(2024, 3, 8), FRIDAY) == 0


def test_calendar_without_business_days_is_rejected():
    calendar = BusinessCalendar(weekend_days=frozenset(range(7)))

    with pytest.raises(ValueError):
        calendar.add_business_days(FRIDAY, 1)
