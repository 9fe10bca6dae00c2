# Overview: Pure calendar math for meal entitlements; no database access.

"""
Calendar Entitlement Calculator

Turns a date range plus two independent disable mechanisms into per-meal
entitlement counts:

- disabled_days: dates fully excluded (every meal contributes 0)
- disabled_meals: {date: {"breakfast": bool, "lunch": bool, "dinner": bool}},
  excluding single meals on single dates

The two are additive and are never merged: a date whose enabled meals are all
set in disabled_meals counts the same as a date in disabled_days, but does not
have to be listed there.

Keys of disabled_meals and members of disabled_days may be date objects or
ISO "YYYY-MM-DD" strings (the JSON column stores strings).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Iterator, Mapping

from ..models.packages import MEAL_TYPES


@dataclass(frozen=True)
class MealCounts:
    breakfast: int = 0
    lunch: int = 0
    dinner: int = 0

    @property
    def total(self) -> int:
        return self.breakfast + self.lunch + self.dinner

    def get(self, meal: str) -> int:
        return getattr(self, meal)

    def to_dict(self) -> dict:
        return {
            "breakfast": self.breakfast,
            "lunch": self.lunch,
            "dinner": self.dinner,
            "total": self.total,
        }


ZERO_COUNTS = MealCounts()


def iter_days(start_date: date, end_date: date) -> Iterator[date]:
    """Every calendar day in [start_date, end_date]; nothing if start > end."""
    day = start_date
    while day <= end_date:
        yield day
        day += timedelta(days=1)


def _in_disabled_days(day: date, disabled_days: Iterable) -> bool:
    return day in disabled_days or day.isoformat() in disabled_days


def _meal_flags(day: date, disabled_meals: Mapping | None) -> Mapping:
    if not disabled_meals:
        return {}
    flags = disabled_meals.get(day)
    if flags is None:
        flags = disabled_meals.get(day.isoformat())
    return flags or {}


def is_meal_disabled(day: date, meal: str, disabled_days=frozenset(), disabled_meals=None) -> bool:
    if _in_disabled_days(day, disabled_days):
        return True
    return _meal_flags(day, disabled_meals).get(meal) is True


def is_day_fully_disabled(
    day: date,
    enabled_meals: Iterable[str],
    disabled_days=frozenset(),
    disabled_meals=None,
) -> bool:
    """
    A day is fully disabled when it is in disabled_days, or when every
    enabled meal is individually disabled for it.
    """
    if _in_disabled_days(day, disabled_days):
        return True
    flags = _meal_flags(day, disabled_meals)
    if not flags:
        return False
    meals = list(enabled_meals)
    return bool(meals) and all(flags.get(meal) is True for meal in meals)


def calculate_meal_counts(
    start_date: date | None,
    end_date: date | None,
    *,
    breakfast_enabled: bool,
    lunch_enabled: bool,
    dinner_enabled: bool,
    disabled_days=frozenset(),
    disabled_meals: Mapping | None = None,
) -> MealCounts:
    """
    Count entitlement for each meal over [start_date, end_date] inclusive.

    A missing bound or start_date > end_date yields all zeros; rejecting an
    inverted range is the validator's job, not the calculator's.
    """
    if start_date is None or end_date is None or start_date > end_date:
        return ZERO_COUNTS

    enabled = {
        "breakfast": breakfast_enabled,
        "lunch": lunch_enabled,
        "dinner": dinner_enabled,
    }
    counts = dict.fromkeys(MEAL_TYPES, 0)

    for day in iter_days(start_date, end_date):
        if _in_disabled_days(day, disabled_days):
            continue
        flags = _meal_flags(day, disabled_meals)
        for meal in MEAL_TYPES:
            if enabled[meal] and flags.get(meal) is not True:
                counts[meal] += 1

    return MealCounts(**counts)


def weekend_days(start_date: date | None, end_date: date | None, weekdays=(5, 6)) -> list[date]:
    """
    Dates in the range falling on the given weekdays (Monday=0 ... Sunday=6).

    Used by the partial_full_time policy to pre-populate disabled_days.
    """
    if start_date is None or end_date is None:
        return []
    weekdays = set(weekdays)
    return [day for day in iter_days(start_date, end_date) if day.weekday() in weekdays]
