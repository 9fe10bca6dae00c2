# Overview: Service-layer operations for the member package lifecycle; encapsulates business logic and database work.

"""
Package Lifecycle Manager

================================================================================
PURPOSE: Create, edit, renew, deactivate, reactivate, expire and delete member
packages, keeping the package row, its history and its ledger consistent
================================================================================

RULES:
1. Every transition runs in one transaction (concurrency.atomic): validation
   that reads the database, the package write, the history entry and any
   ledger transaction commit together or not at all.
2. Package creation and renewal lock the member row first, so rules 6 and 7
   of the validator are checked against data no concurrent request can change
   before the insert. The partial unique index on member_packages backs this up.
3. Every transition appends exactly one PackageHistory row per package it
   changes. History is never edited.
4. Transition eligibility is always decided on the effective status
   (package_status.get_effective_status), never on the stored column alone.
5. Nothing here retries. A rejected transition raises a DomainError subclass
   with a message naming the remedy.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from flask import current_app

from ..extensions import db
from ..models import Member, MemberPackage, PackageDisabledDay, PackageHistory
from ..models.packages import (
    DATE_BOUND_TYPES,
    HISTORY_ACTIONS,
    MEAL_TYPES,
    PACKAGE_DAILY_BASIS,
    PACKAGE_PARTIAL,
    PACKAGE_PARTIAL_FULL_TIME,
    STATUS_ACTIVE,
    STATUS_DEACTIVATED,
    STATUS_EXPIRED,
    STATUS_RENEWED,
)
from ..validation import (
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    coerce_bool,
    enforce_money_rules,
    validate_payload,
)
from mealpass.time_utils import today_utc
from . import balance_service, member_service, package_validation
from .calendar_service import ZERO_COUNTS, MealCounts, calculate_meal_counts, weekend_days
from .concurrency import atomic, lock_for_update
from .consumption_service import remaining
from .package_requests import (
    CreatePackageRequest,
    DailyBasisTerms,
    DateRangeTerms,
    MealSelection,
    PackageTerms,
    PartialTerms,
    RenewalRequest,
    parse_disabled_days,
    parse_disabled_meals,
    parse_renewal_request,
)
from .package_status import (  # noqa: F401  (re-exported for callers)
    StateError,
    ensure_can_deactivate,
    ensure_can_reactivate,
    ensure_can_renew,
    get_effective_status,
    validate_status,
)


@dataclass(frozen=True)
class RenewalResult:
    package: MemberPackage
    previous_package_id: int
    carry_over_enabled: bool
    carried_over: MealCounts

    def carry_over_summary(self) -> dict:
        return {
            "enabled": self.carry_over_enabled,
            "breakfast": self.carried_over.breakfast,
            "lunch": self.carried_over.lunch,
            "dinner": self.carried_over.dinner,
        }


# =============================================================================
# HELPERS
# =============================================================================

def _weekend_weekdays() -> tuple[int, ...]:
    return tuple(current_app.config.get("WEEKEND_DAYS", (5, 6)))


def _get_locked_package(package_id: int) -> MemberPackage:
    package = lock_for_update(db.session.query(MemberPackage).filter_by(id=package_id)).first()
    if package is None:
        raise NotFoundError(f"Package {package_id} not found")
    return package


def _append_history(
    package: MemberPackage,
    action: str,
    *,
    notes: str | None = None,
    previous_package_id: int | None = None,
) -> PackageHistory:
    if action not in HISTORY_ACTIONS:
        raise ValueError(f"Unknown package history action: {action}")
    entry = PackageHistory(
        package_id=package.id,
        member_id=package.member_id,
        member_type=package.member_type,
        action=action,
        package_type=package.package_type,
        total_breakfast=package.total_breakfast,
        total_lunch=package.total_lunch,
        total_dinner=package.total_dinner,
        consumed_breakfast=package.consumed_breakfast,
        consumed_lunch=package.consumed_lunch,
        consumed_dinner=package.consumed_dinner,
        balance_cents=package.balance_cents,
        start_date=package.start_date,
        end_date=package.end_date,
        previous_package_id=previous_package_id,
        notes=notes,
    )
    db.session.add(entry)
    return entry


def _within(day: date, start_date: date, end_date: date) -> bool:
    return start_date <= day <= end_date


def _resolve_disable_sets(terms: DateRangeTerms) -> tuple[frozenset, dict]:
    """
    Disabled days/meals for a newly chosen range, trimmed to the range.
    partial_full_time gets its weekends added here, once.
    """
    days = set(terms.disabled_days)
    if terms.package_type == PACKAGE_PARTIAL_FULL_TIME and terms.apply_weekend_policy:
        days.update(weekend_days(terms.start_date, terms.end_date, _weekend_weekdays()))
    days = frozenset(d for d in days if _within(d, terms.start_date, terms.end_date))
    meals = {
        key: flags
        for key, flags in terms.disabled_meals.items()
        if _within(date.fromisoformat(key), terms.start_date, terms.end_date)
    }
    return days, meals


def _apply_counts(package: MemberPackage, counts: MealCounts) -> None:
    for meal in MEAL_TYPES:
        setattr(package, f"total_{meal}", counts.get(meal))


def _set_disabled_days(package: MemberPackage, days) -> None:
    if package.disabled_day_rows:
        # Old rows must be deleted before re-inserting the same (package_id, date) pairs
        package.disabled_day_rows = []
        db.session.flush()
    package.disabled_day_rows = [PackageDisabledDay(disabled_date=d) for d in sorted(days)]


def _build_package(
    member: Member,
    meals: MealSelection,
    terms: PackageTerms,
    *,
    price_cents: int,
    discount_cents: int,
    notes: str | None,
) -> MemberPackage:
    """New active package with entitlement filled in. Not added to the session."""
    package = MemberPackage(
        member_id=member.id,
        member_type=member.member_type,
        package_type=terms.package_type,
        breakfast_enabled=meals.breakfast,
        lunch_enabled=meals.lunch,
        dinner_enabled=meals.dinner,
        price_cents=price_cents,
        discount_cents=discount_cents,
        notes=notes,
        status=STATUS_ACTIVE,
        is_active=True,
        balance_cents=0,
        consumed_breakfast=0,
        consumed_lunch=0,
        consumed_dinner=0,
        disabled_meals={},
    )

    if isinstance(terms, DateRangeTerms):
        days, disabled_meals = _resolve_disable_sets(terms)
        package.start_date = terms.start_date
        package.end_date = terms.end_date
        package.disabled_meals = disabled_meals
        _set_disabled_days(package, days)
        _apply_counts(package, calculate_meal_counts(
            terms.start_date,
            terms.end_date,
            breakfast_enabled=meals.breakfast,
            lunch_enabled=meals.lunch,
            dinner_enabled=meals.dinner,
            disabled_days=days,
            disabled_meals=disabled_meals,
        ))
    elif isinstance(terms, PartialTerms):
        _apply_counts(package, MealCounts(**{
            meal: terms.totals.get(meal) if getattr(meals, meal) else 0 for meal in MEAL_TYPES
        }))
    elif isinstance(terms, DailyBasisTerms):
        _apply_counts(package, ZERO_COUNTS)
        package.breakfast_price_cents = terms.breakfast_price_cents
        package.lunch_price_cents = terms.lunch_price_cents
        package.dinner_price_cents = terms.dinner_price_cents

    return package


def _record_initial_deposit(package: MemberPackage, terms: PackageTerms, description: str) -> None:
    if isinstance(terms, DailyBasisTerms):
        balance_service.deposit(package, terms.initial_deposit_cents, description)


# =============================================================================
# EXPIRY
# =============================================================================

def expire_lapsed_packages(
    today: date,
    *,
    member_id: int | None = None,
    member_type: str | None = None,
) -> list[MemberPackage]:
    """
    Stamp date-bound packages whose end_date has passed as expired and append
    an "expired" history entry for each.

    Runs inside the caller's transaction. Reads already treat these packages
    as expired; this makes the stored row agree so the member's package slot
    is released.
    """
    query = db.session.query(MemberPackage).filter(
        MemberPackage.status == STATUS_ACTIVE,
        MemberPackage.is_active.is_(True),
        MemberPackage.package_type.in_(DATE_BOUND_TYPES),
        MemberPackage.end_date < today,
    )
    if member_id is not None:
        query = query.filter(MemberPackage.member_id == member_id)
    if member_type is not None:
        query = query.filter(MemberPackage.member_type == member_type)

    lapsed = lock_for_update(query).order_by(MemberPackage.id).all()
    for package in lapsed:
        _append_history(package, "expired", notes=f"End date {package.end_date.isoformat()} passed")
        package.status = STATUS_EXPIRED
        package.is_active = False
    db.session.flush()
    return lapsed


def run_expiry_sweep(today: date | None = None) -> list[MemberPackage]:
    """Expire every lapsed package in one transaction."""
    today = today or today_utc()
    with atomic("Expiry sweep"):
        lapsed = expire_lapsed_packages(today)
    return lapsed


# =============================================================================
# CREATE / EDIT
# =============================================================================

def create_package(request: CreatePackageRequest, *, today: date | None = None) -> MemberPackage:
    """
    Validate and create a package (initial status active).

    daily_basis packages start at a zero balance and receive their initial
    deposit through the ledger in the same transaction.

    Raises:
        ValidationError / NotFoundError: rules 1-5
        InvariantViolationError: rules 6-7
        StorageError: database failure (nothing is written)
    """
    today = today or today_utc()

    with atomic("Package creation"):
        member = member_service.get_member(request.member_id, request.member_type, for_update=True)
        expire_lapsed_packages(today, member_id=member.id, member_type=member.member_type)
        package_validation.validate_create(request)

        package = _build_package(
            member,
            request.meals,
            request.terms,
            price_cents=request.price_cents,
            discount_cents=request.discount_cents,
            notes=request.notes,
        )
        db.session.add(package)
        db.session.flush()

        _record_initial_deposit(package, request.terms, "Initial deposit")
        _append_history(package, "created")
        db.session.flush()

    return package


PACKAGE_EDIT_POLICY = ModelValidationPolicy(
    writable_fields={
        "price_cents",
        "discount_cents",
        "notes",
        "start_date",
        "end_date",
        "total_breakfast",
        "total_lunch",
        "total_dinner",
        "breakfast_price_cents",
        "lunch_price_cents",
        "dinner_price_cents",
    },
    immutable_fields={
        "package_type": "Package type cannot be changed; renew the package to switch types",
        "breakfast_enabled": "Enabled meals cannot be changed after creation; renew the package instead",
        "lunch_enabled": "Enabled meals cannot be changed after creation; renew the package instead",
        "dinner_enabled": "Enabled meals cannot be changed after creation; renew the package instead",
        "balance_cents": "Balance can only change through deposits and meal debits",
        "member_id": "A package cannot be moved to another member",
        "member_type": "A package cannot be moved to another member",
        "status": "Use the deactivate, reactivate or renew actions to change status",
        "is_active": "Use the deactivate, reactivate or renew actions to change status",
        "consumed_breakfast": "Consumption is recorded through meal check-ins",
        "consumed_lunch": "Consumption is recorded through meal check-ins",
        "consumed_dinner": "Consumption is recorded through meal check-ins",
    },
)

_DATE_BOUND_FIELDS = {"start_date", "end_date", "disabled_days", "disabled_meals"}
_PARTIAL_FIELDS = {"total_breakfast", "total_lunch", "total_dinner"}
_DAILY_BASIS_FIELDS = {"breakfast_price_cents", "lunch_price_cents", "dinner_price_cents"}


def _reject_fields(package: MemberPackage, patch: dict, fields: set[str]) -> None:
    misplaced = sorted(fields & set(patch))
    if misplaced:
        raise ValidationError(
            f"{', '.join(misplaced)} cannot be set on a {package.package_type} package",
            code="FIELD_NOT_APPLICABLE",
        )


def _edit_date_range(package: MemberPackage, patch: dict) -> None:
    start_date = patch.get("start_date", package.start_date)
    end_date = patch.get("end_date", package.end_date)
    days = parse_disabled_days(patch["disabled_days"]) if "disabled_days" in patch else package.disabled_days
    disabled_meals = (
        parse_disabled_meals(patch["disabled_meals"]) if "disabled_meals" in patch else dict(package.disabled_meals or {})
    )

    # Weekend policy is not re-applied on edit; it only runs when a range is first chosen
    terms = DateRangeTerms(
        package_type=package.package_type,
        start_date=start_date,
        end_date=end_date,
        disabled_days=days,
        disabled_meals=disabled_meals,
        apply_weekend_policy=False,
    )
    package_validation.validate_terms(terms)

    if (start_date, end_date) != (package.start_date, package.end_date):
        package_validation.check_date_overlap(
            package.member_id, package.member_type, start_date, end_date, exclude_package_id=package.id
        )

    days, disabled_meals = _resolve_disable_sets(terms)
    counts = calculate_meal_counts(
        start_date,
        end_date,
        breakfast_enabled=package.breakfast_enabled,
        lunch_enabled=package.lunch_enabled,
        dinner_enabled=package.dinner_enabled,
        disabled_days=days,
        disabled_meals=disabled_meals,
    )
    package_validation.ensure_meal_counts_cover_consumption(package, counts)

    package.start_date = start_date
    package.end_date = end_date
    package.disabled_meals = disabled_meals
    if days != package.disabled_days:
        _set_disabled_days(package, days)
    _apply_counts(package, counts)


def _edit_partial_totals(package: MemberPackage, patch: dict) -> None:
    counts = MealCounts(**{
        meal: patch.get(f"total_{meal}", getattr(package, f"total_{meal}")) for meal in MEAL_TYPES
    })
    for meal in MEAL_TYPES:
        if counts.get(meal) < 0:
            raise ValidationError(f"total_{meal} must be >= 0")
        if counts.get(meal) > 0 and not getattr(package, f"{meal}_enabled"):
            raise ValidationError(f"{meal} is not enabled for this package", code="MEAL_NOT_ENABLED")
    package_validation.validate_terms(PartialTerms(totals=counts), MealSelection.of_package(package))
    package_validation.ensure_meal_counts_cover_consumption(package, counts)
    _apply_counts(package, counts)


def update_package(package_id: int, payload: Any) -> MemberPackage:
    """
    Edit a package in place.

    Editable: price, discount, notes; dates and disable sets (date-bound,
    totals recomputed); totals (partial); meal prices (daily_basis).
    Enabled meals, type and balance are fixed; the one-package rule does not
    apply to edits, and the overlap rule only when the dates move.
    """
    payload = payload or {}
    patch = validate_payload(
        model=MemberPackage,
        payload=payload,
        policy=PACKAGE_EDIT_POLICY,
        extra_fields={"disabled_days", "disabled_meals"},
    )
    enforce_money_rules(patch)

    with atomic("Package update"):
        package = _get_locked_package(package_id)
        if package.status == STATUS_RENEWED:
            raise StateError(
                f"Package {package.id} has been renewed and is kept as history; edit the newer package instead.",
                code="EDIT_RENEWED",
            )

        if package.package_type not in DATE_BOUND_TYPES:
            _reject_fields(package, patch, _DATE_BOUND_FIELDS)
        if package.package_type != PACKAGE_PARTIAL:
            _reject_fields(package, patch, _PARTIAL_FIELDS)
        if package.package_type != PACKAGE_DAILY_BASIS:
            _reject_fields(package, patch, _DAILY_BASIS_FIELDS)

        if package.package_type in DATE_BOUND_TYPES and _DATE_BOUND_FIELDS & set(patch):
            _edit_date_range(package, patch)
        if package.package_type == PACKAGE_PARTIAL and _PARTIAL_FIELDS & set(patch):
            _edit_partial_totals(package, patch)

        for key in ("price_cents", "discount_cents", "notes") + tuple(sorted(_DAILY_BASIS_FIELDS)):
            if key in patch:
                setattr(package, key, patch[key])

        db.session.flush()

    return package


# =============================================================================
# RENEW
# =============================================================================

def renew_package(
    package_id: int,
    request: RenewalRequest | dict,
    *,
    today: date | None = None,
) -> RenewalResult:
    """
    Close a package as renewed and open its successor.

    A dict request is parsed against the package being renewed, so package
    type, enabled meals and daily_basis meal prices default to the old ones.

    Carry-over applies only to partial -> partial renewals: each meal's
    remaining entitlement is added on top of the new totals. A package that
    is already expired carries nothing.

    Raises:
        StateError: renewed/deactivated package, or date-bound still active
        ValidationError: new terms invalid (rules 2-5)
        InvariantViolationError: new range overlaps the member's history
    """
    today = today or today_utc()

    with atomic("Package renewal"):
        previous = _get_locked_package(package_id)
        member = member_service.get_member(previous.member_id, previous.member_type, for_update=True)
        effective = ensure_can_renew(previous, today)

        if not isinstance(request, RenewalRequest):
            request = parse_renewal_request(request, previous)

        carried = ZERO_COUNTS
        if request.carry_over:
            if previous.package_type != PACKAGE_PARTIAL or request.package_type != PACKAGE_PARTIAL:
                raise ValidationError(
                    "Carry-over is only available when renewing a partial package as a partial package",
                    code="CARRY_OVER_NOT_SUPPORTED",
                )
            if effective == STATUS_ACTIVE:
                left = remaining(previous)
                carried = MealCounts(**{
                    meal: left.get(meal) if getattr(request.meals, meal) else 0 for meal in MEAL_TYPES
                })

        package_validation.validate_structure(request.meals, request.terms, carried)
        package_validation.check_single_open_package(
            member.id, member.member_type, exclude_package_id=previous.id
        )
        if isinstance(request.terms, DateRangeTerms):
            package_validation.check_date_overlap(
                member.id, member.member_type, request.terms.start_date, request.terms.end_date
            )

        _append_history(previous, "renewed")
        previous.status = STATUS_RENEWED
        previous.is_active = False
        # Release the member's open-package slot before the successor is inserted
        db.session.flush()

        package = _build_package(
            member,
            request.meals,
            request.terms,
            price_cents=request.price_cents,
            discount_cents=request.discount_cents,
            notes=request.notes,
        )
        for meal in MEAL_TYPES:
            setattr(package, f"total_{meal}", getattr(package, f"total_{meal}") + carried.get(meal))
            setattr(package, f"carried_over_{meal}", carried.get(meal))
        package.carried_over_from_package_id = previous.id
        db.session.add(package)
        db.session.flush()

        _record_initial_deposit(package, request.terms, "Initial deposit (renewal)")
        _append_history(package, "created", previous_package_id=previous.id)
        db.session.flush()

    return RenewalResult(
        package=package,
        previous_package_id=previous.id,
        carry_over_enabled=request.carry_over,
        carried_over=carried,
    )


# =============================================================================
# DEACTIVATE / REACTIVATE / DELETE
# =============================================================================

def deactivate_package(package_id: int, reason: str | None = None, *, today: date | None = None) -> MemberPackage:
    """
    Suspend an active package. Entitlement, consumption and balance are left
    exactly as they are.
    """
    today = today or today_utc()
    reason = (reason or "").strip() or None

    with atomic("Package deactivation"):
        package = _get_locked_package(package_id)
        ensure_can_deactivate(package, today)

        package.status = STATUS_DEACTIVATED
        package.is_active = False
        package.deactivation_reason = reason
        _append_history(package, "deactivated", notes=reason or "Package deactivated by admin")
        db.session.flush()

    return package


def reactivate_package(package_id: int, *, today: date | None = None) -> MemberPackage:
    """Resume a deactivated package where it was suspended. Nothing is recomputed."""
    today = today or today_utc()

    with atomic("Package reactivation"):
        package = _get_locked_package(package_id)
        member_service.get_member(package.member_id, package.member_type, for_update=True)
        ensure_can_reactivate(package, today)
        package_validation.check_single_open_package(
            package.member_id, package.member_type, exclude_package_id=package.id
        )

        package.status = STATUS_ACTIVE
        package.is_active = True
        package.deactivation_reason = None
        _append_history(package, "reactivated", notes="Package reactivated by admin")
        db.session.flush()

    return package


def delete_package(package_id: int) -> None:
    """
    Hard delete a package with its disabled days, history, transactions and
    check-ins. Allowed from any state; frees the member for a new package.
    """
    with atomic("Package deletion"):
        package = _get_locked_package(package_id)
        db.session.query(MemberPackage).filter(
            MemberPackage.carried_over_from_package_id == package.id
        ).update({MemberPackage.carried_over_from_package_id: None}, synchronize_session=False)
        db.session.delete(package)


# =============================================================================
# READS
# =============================================================================

def get_package(package_id: int) -> MemberPackage:
    package = db.session.get(MemberPackage, package_id)
    if package is None:
        raise NotFoundError(f"Package {package_id} not found")
    return package


def list_packages(
    *,
    member_id: int | None = None,
    member_type: str | None = None,
    package_type: str | None = None,
    status: str | None = None,
    is_active: bool | str | None = None,
    today: date | None = None,
) -> list[MemberPackage]:
    """
    Packages newest first. `status` and `is_active` filter on the effective
    status, so a lapsed package never shows up as active. A blank string
    for either means no filter.
    """
    today = today or today_utc()
    query = db.session.query(MemberPackage)
    if member_id is not None:
        query = query.filter(MemberPackage.member_id == member_id)
    if member_type:
        query = query.filter(MemberPackage.member_type == member_type)
    if package_type:
        query = query.filter(MemberPackage.package_type == package_type)
    packages = query.order_by(MemberPackage.created_at.desc(), MemberPackage.id.desc()).all()

    if status:
        validate_status(status)
        packages = [p for p in packages if get_effective_status(p, today) == status]
    active_flag = is_active
    if isinstance(is_active, str):
        active_flag = coerce_bool("is_active", is_active) if is_active.strip() else None
    if active_flag is not None:
        packages = [p for p in packages if (get_effective_status(p, today) == STATUS_ACTIVE) == active_flag]
    return packages


def get_member_history(package: MemberPackage) -> list[PackageHistory]:
    """Every history entry for the package's member, across all packages, oldest first."""
    return (
        db.session.query(PackageHistory)
        .filter_by(member_id=package.member_id, member_type=package.member_type)
        .order_by(PackageHistory.id)
        .all()
    )


def preview_entitlement(meals: MealSelection, terms: PackageTerms) -> tuple[MealCounts, frozenset]:
    """
    Counts a new package would get, and the disabled days it would store
    (with the weekend policy applied for partial_full_time). Writes nothing.
    """
    if isinstance(terms, DateRangeTerms):
        package_validation.validate_terms(terms)
        days, disabled_meals = _resolve_disable_sets(terms)
        counts = calculate_meal_counts(
            terms.start_date,
            terms.end_date,
            breakfast_enabled=meals.breakfast,
            lunch_enabled=meals.lunch,
            dinner_enabled=meals.dinner,
            disabled_days=days,
            disabled_meals=disabled_meals,
        )
        return counts, days
    if isinstance(terms, PartialTerms):
        return MealCounts(**{
            meal: terms.totals.get(meal) if getattr(meals, meal) else 0 for meal in MEAL_TYPES
        }), frozenset()
    return ZERO_COUNTS, frozenset()
