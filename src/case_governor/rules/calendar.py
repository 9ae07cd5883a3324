"""Business-day calendar for SLA arithmetic.

Weekends and a configured holiday set are non-business days. The holiday set
is an input (settings or caller supplied); no jurisdiction is built in.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import FrozenSet, Iterable


@dataclass(frozen=True)
class BusinessCalendar:
    """Weekday/holiday calendar.

    Attributes:
        holidays: Dates that are never business days
        weekend_days: Weekday numbers treated as weekend (0=Monday, 6=Sunday)
    """

    holidays: FrozenSet[date] = field(default_factory=frozenset)
    weekend_days: FrozenSet[int] = field(default_factory=lambda: frozenset({5, 6}))

    @classmethod
    def from_dates(cls, dates: Iterable[date]) -> "BusinessCalendar":
        return cls(holidays=frozenset(dates))

    def is_holiday(self, d: date) -> bool:
        return d in self.holidays

    def is_weekend(self, d: date) -> bool:
        return d.weekday() in self.weekend_days

    def is_business_day(self, d: date) -> bool:
        """A business day is a weekday that is not a holiday."""
        return not self.is_weekend(d) and not self.is_holiday(d)

    def add_business_days(self, start: date, days: int) -> date:
        """Move ``days`` business days from ``start`` (start itself not counted)."""
        if days == 0:
            return start
        if len(self.weekend_days) >= 7:
            raise ValueError("Calendar has no business days")

        direction = 1 if days > 0 else -1
        remaining = abs(days)
        current = start

        while remaining > 0:
            current += timedelta(days=direction)
            if self.is_business_day(current):
                remaining -= 1

        return current

    def next_business_day(self, d: date) -> date:
        """The first business day on or after ``d``."""
        current = d
        while not self.is_business_day(current):
            current += timedelta(days=1)
        return current

    def business_days_between(self, start: date, end: date) -> int:
        """Count business days between two dates (start exclusive, end inclusive)."""
        if start >= end:
            return 0

        count = 0
        current = start + timedelta(days=1)
        while current <= end:
            if self.is_business_day(current):
                count += 1
            current += timedelta(days=1)
        return count
