# Overview: Typed request objects for package operations, parsed from JSON payloads.

"""
Package requests are a tagged union on package_type. Each variant carries
only the fields that mean something for that type:

- DateRangeTerms   (full_time, partial_full_time): dates and disable sets
- PartialTerms     (partial): administrator-entered meal totals
- DailyBasisTerms  (daily_basis): initial deposit and per-meal prices

The variant is chosen once, when the payload is parsed, and never changes.
Parsing only coerces types; business rules live in package_validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Optional, Union

from ..models.packages import (
    DATE_BOUND_TYPES,
    MEAL_TYPES,
    PACKAGE_DAILY_BASIS,
    PACKAGE_PARTIAL,
    PACKAGE_TYPES,
    MemberPackage,
)
from ..validation import ValidationError, coerce_bool, coerce_date, coerce_int
from .calendar_service import MealCounts


@dataclass(frozen=True)
class MealSelection:
    breakfast: bool = False
    lunch: bool = False
    dinner: bool = False

    def any(self) -> bool:
        return self.breakfast or self.lunch or self.dinner

    def enabled(self) -> tuple[str, ...]:
        return tuple(meal for meal in MEAL_TYPES if getattr(self, meal))

    @classmethod
    def of_package(cls, package: MemberPackage) -> "MealSelection":
        return cls(
            breakfast=package.breakfast_enabled,
            lunch=package.lunch_enabled,
            dinner=package.dinner_enabled,
        )


@dataclass(frozen=True)
class DateRangeTerms:
    package_type: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    disabled_days: frozenset = frozenset()
    # {"YYYY-MM-DD": {"lunch": True}}; only true flags are kept
    disabled_meals: Mapping[str, Mapping[str, bool]] = field(default_factory=dict)
    # Pre-populate weekends for partial_full_time when the range is first chosen
    apply_weekend_policy: bool = True


@dataclass(frozen=True)
class PartialTerms:
    totals: MealCounts = field(default_factory=MealCounts)
    package_type: str = PACKAGE_PARTIAL


@dataclass(frozen=True)
class DailyBasisTerms:
    initial_deposit_cents: Optional[int] = None
    breakfast_price_cents: int = 0
    lunch_price_cents: int = 0
    dinner_price_cents: int = 0
    package_type: str = PACKAGE_DAILY_BASIS


PackageTerms = Union[DateRangeTerms, PartialTerms, DailyBasisTerms]


@dataclass(frozen=True)
class CreatePackageRequest:
    member_id: Optional[int]
    member_type: Optional[str]
    meals: MealSelection
    terms: PackageTerms
    price_cents: int = 0
    discount_cents: int = 0
    notes: Optional[str] = None

    @property
    def package_type(self) -> str:
        return self.terms.package_type


@dataclass(frozen=True)
class RenewalRequest:
    meals: MealSelection
    terms: PackageTerms
    carry_over: bool = False
    price_cents: int = 0
    discount_cents: int = 0
    notes: Optional[str] = None

    @property
    def package_type(self) -> str:
        return self.terms.package_type


# =============================================================================
# PAYLOAD PARSING
# =============================================================================

def _require_mapping(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _non_negative(key: str, value: Any, default: int = 0) -> int:
    parsed = coerce_int(key, value)
    if parsed is None:
        return default
    if parsed < 0:
        raise ValidationError(f"{key} must be >= 0")
    return parsed


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_package_type(value: Any) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError("Package type is required")
    package_type = str(value).strip()
    if package_type not in PACKAGE_TYPES:
        raise ValidationError(
            f"Invalid package type '{package_type}'. Must be one of: {', '.join(PACKAGE_TYPES)}"
        )
    return package_type


def parse_meal_type(value: Any) -> str:
    meal = str(value).strip().lower() if value is not None else ""
    if meal not in MEAL_TYPES:
        raise ValidationError("Valid meal type is required (breakfast, lunch, dinner)")
    return meal


def parse_disabled_days(value: Any) -> frozenset:
    if value is None:
        return frozenset()
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError("disabled_days must be a list of ISO dates")
    days = set()
    for raw in value:
        day = coerce_date("disabled_days", raw)
        if day is None:
            raise ValidationError("disabled_days must be a list of ISO dates")
        days.add(day)
    return frozenset(days)


def parse_disabled_meals(value: Any) -> dict:
    """
    Normalize {date: {meal: bool}} to ISO-string keys with only true flags.
    Dates whose flags are all false are dropped.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("disabled_meals must be an object keyed by ISO date")
    normalized = {}
    for raw_day, flags in value.items():
        day = coerce_date("disabled_meals", raw_day)
        if day is None:
            raise ValidationError("disabled_meals keys must be ISO dates")
        if not isinstance(flags, dict):
            raise ValidationError(f"disabled_meals[{day.isoformat()}] must be an object of meal flags")
        kept = {}
        for meal, flag in flags.items():
            if meal not in MEAL_TYPES:
                raise ValidationError(f"Unknown meal '{meal}' in disabled_meals[{day.isoformat()}]")
            if coerce_bool(f"disabled_meals[{day.isoformat()}].{meal}", flag):
                kept[meal] = True
        if kept:
            normalized[day.isoformat()] = kept
    return normalized


def parse_meal_selection(payload: dict, default: MealSelection | None = None) -> MealSelection:
    default = default or MealSelection()
    values = {}
    for meal in MEAL_TYPES:
        key = f"{meal}_enabled"
        if key in payload and payload[key] is not None:
            values[meal] = coerce_bool(key, payload[key])
        else:
            values[meal] = getattr(default, meal)
    return MealSelection(**values)


def parse_terms(package_type: str, payload: dict, previous: MemberPackage | None = None) -> PackageTerms:
    if package_type in DATE_BOUND_TYPES:
        apply_weekends = coerce_bool("apply_weekend_policy", payload.get("apply_weekend_policy"))
        return DateRangeTerms(
            package_type=package_type,
            start_date=coerce_date("start_date", payload.get("start_date")),
            end_date=coerce_date("end_date", payload.get("end_date")),
            disabled_days=parse_disabled_days(payload.get("disabled_days")),
            disabled_meals=parse_disabled_meals(payload.get("disabled_meals")),
            apply_weekend_policy=True if apply_weekends is None else apply_weekends,
        )

    if package_type == PACKAGE_PARTIAL:
        return PartialTerms(
            totals=MealCounts(
                breakfast=_non_negative("total_breakfast", payload.get("total_breakfast")),
                lunch=_non_negative("total_lunch", payload.get("total_lunch")),
                dinner=_non_negative("total_dinner", payload.get("total_dinner")),
            )
        )

    # daily_basis: meal prices fall back to the previous package on renewal
    prices = {}
    for meal in MEAL_TYPES:
        key = f"{meal}_price_cents"
        fallback = getattr(previous, key) if previous is not None else 0
        prices[key] = _non_negative(key, payload.get(key), default=fallback)
    return DailyBasisTerms(
        initial_deposit_cents=coerce_int("initial_deposit_cents", payload.get("initial_deposit_cents")),
        **prices,
    )


def parse_create_request(payload: Any) -> CreatePackageRequest:
    payload = _require_mapping(payload)
    package_type = parse_package_type(payload.get("package_type"))
    member_type = _text(payload.get("member_type"))
    return CreatePackageRequest(
        member_id=coerce_int("member_id", payload.get("member_id")),
        member_type=member_type.lower() if member_type else None,
        meals=parse_meal_selection(payload),
        terms=parse_terms(package_type, payload),
        price_cents=_non_negative("price_cents", payload.get("price_cents")),
        discount_cents=_non_negative("discount_cents", payload.get("discount_cents")),
        notes=_text(payload.get("notes")),
    )


def parse_renewal_request(payload: Any, previous: MemberPackage) -> RenewalRequest:
    """Package type and enabled meals default to the package being renewed."""
    payload = _require_mapping(payload)
    raw_type = payload.get("package_type")
    package_type = previous.package_type if raw_type in (None, "") else parse_package_type(raw_type)
    carry_over = coerce_bool("carry_over", payload.get("carry_over"))
    return RenewalRequest(
        meals=parse_meal_selection(payload, default=MealSelection.of_package(previous)),
        terms=parse_terms(package_type, payload, previous=previous),
        carry_over=bool(carry_over),
        price_cents=_non_negative("price_cents", payload.get("price_cents")),
        discount_cents=_non_negative("discount_cents", payload.get("discount_cents")),
        notes=_text(payload.get("notes")),
    )
