from __future__ import annotations

import calendar
from datetime import date
from typing import Literal

PackageStatus = Literal["upcoming", "active", "expiring_soon", "expired"]

EXPIRING_SOON_DAYS = 3
ACTIVE_STATUSES: frozenset[str] = frozenset({"active", "expiring_soon"})


def days_between(start: date, end: date) -> int:
    """Whole calendar days from ``start`` to ``end`` (negative when ``end`` is earlier)."""
    return (end - start).days


def classify(start: date, end: date, today: date) -> PackageStatus:
    if start > today:
        return "upcoming"
    if end < today:
        return "expired"
    if days_between(today, end) <= EXPIRING_SOON_DAYS:
        return "expiring_soon"
    return "active"


def _birthday_in_year(date_of_birth: date, year: int) -> date:
    if date_of_birth.month == 2 and date_of_birth.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date(year, date_of_birth.month, date_of_birth.day)


def next_birthday(date_of_birth: date, today: date) -> date:
    """Project month/day onto this year, or next year when it has already passed.

    A 29 February birthday is observed on 28 February in non-leap years.
    """
    candidate = _birthday_in_year(date_of_birth, today.year)
    if candidate < today:
        candidate = _birthday_in_year(date_of_birth, today.year + 1)
    return candidate


def days_until_birthday(date_of_birth: date, today: date) -> int:
    return days_between(today, next_birthday(date_of_birth, today))


def is_birthday(date_of_birth: date, today: date) -> bool:
    return next_birthday(date_of_birth, today) == today
