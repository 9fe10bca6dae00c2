# Overview: Structural and invariant checks run before any package row is written.

"""
Package Validator

Rules, checked in this order (first failure wins):
1. member selected and resolvable
2. at least one meal enabled
3. full_time / partial_full_time: start_date and end_date present, start <= end
4. partial: at least one positive meal total
5. daily_basis: initial deposit > 0
6. create only: member has no active or deactivated package
7. create only: date-bound range does not overlap any date-bound package of
   the member, whatever its status

Rules 6 and 7 read the database and must run inside the same transaction as
the insert, after the member row has been locked (see package_service).
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..models import Member, MemberPackage
from ..models.packages import (
    DATE_BOUND_TYPES,
    MEAL_TYPES,
    OPEN_STATUSES,
    STATUS_ACTIVE,
)
from ..validation import InvariantViolationError, ValidationError
from . import member_service
from .calendar_service import ZERO_COUNTS, MealCounts
from .package_requests import (
    CreatePackageRequest,
    DailyBasisTerms,
    DateRangeTerms,
    MealSelection,
    PackageTerms,
    PartialTerms,
)


def validate_meals(meals: MealSelection) -> None:
    if not meals.any():
        raise ValidationError(
            "At least one meal (breakfast, lunch or dinner) must be enabled",
            code="NO_MEALS_ENABLED",
        )


def validate_terms(
    terms: PackageTerms,
    meals: MealSelection | None = None,
    carried: MealCounts = ZERO_COUNTS,
) -> None:
    if isinstance(terms, DateRangeTerms):
        if terms.start_date is None:
            raise ValidationError("Start date is required for this package type", code="START_DATE_REQUIRED")
        if terms.end_date is None:
            raise ValidationError("End date is required for this package type", code="END_DATE_REQUIRED")
        if terms.start_date > terms.end_date:
            raise ValidationError(
                f"Start date {terms.start_date.isoformat()} is after end date {terms.end_date.isoformat()}",
                code="INVALID_DATE_RANGE",
            )
    elif isinstance(terms, PartialTerms):
        enabled = meals.enabled() if meals is not None else MEAL_TYPES
        if sum(terms.totals.get(meal) + carried.get(meal) for meal in enabled) <= 0:
            raise ValidationError(
                "Enter at least one meal count greater than zero for a partial package",
                code="NO_MEAL_COUNTS",
            )
    elif isinstance(terms, DailyBasisTerms):
        if terms.initial_deposit_cents is None or terms.initial_deposit_cents <= 0:
            raise ValidationError(
                "Initial deposit amount is required for daily basis packages",
                code="INITIAL_DEPOSIT_REQUIRED",
            )


def validate_structure(meals: MealSelection, terms: PackageTerms, carried: MealCounts = ZERO_COUNTS) -> None:
    """
    Rules 2-5: everything that can be checked without the database.

    carried is the entitlement a partial renewal brings forward; it counts
    toward rule 4.
    """
    validate_meals(meals)
    validate_terms(terms, meals, carried)


def check_single_open_package(member_id: int, member_type: str, *, exclude_package_id: int | None = None) -> None:
    """
    Rule 6. The message tells the administrator the remedy, which differs
    for an active package (wait or deactivate) and a deactivated one
    (delete or reactivate).
    """
    query = db.session.query(MemberPackage).filter(
        MemberPackage.member_id == member_id,
        MemberPackage.member_type == member_type,
        MemberPackage.status.in_(OPEN_STATUSES),
    )
    if exclude_package_id is not None:
        query = query.filter(MemberPackage.id != exclude_package_id)
    existing = query.order_by(MemberPackage.id).first()
    if existing is None:
        return

    if existing.status == STATUS_ACTIVE:
        raise InvariantViolationError(
            f"This member already has an active {existing.package_type} package (#{existing.id}). "
            "Wait for it to expire or deactivate it before creating a new one.",
            code="ACTIVE_PACKAGE_EXISTS",
        )
    raise InvariantViolationError(
        f"This member has a deactivated {existing.package_type} package (#{existing.id}). "
        "Delete it or reactivate it instead of creating a new one.",
        code="DEACTIVATED_PACKAGE_EXISTS",
    )


def check_date_overlap(
    member_id: int,
    member_type: str,
    start_date: date,
    end_date: date,
    *,
    exclude_package_id: int | None = None,
) -> None:
    """
    Rule 7. Inclusive overlap against every date-bound package of the member,
    including expired and renewed ones.
    """
    query = db.session.query(MemberPackage).filter(
        MemberPackage.member_id == member_id,
        MemberPackage.member_type == member_type,
        MemberPackage.package_type.in_(DATE_BOUND_TYPES),
        MemberPackage.start_date.isnot(None),
        MemberPackage.end_date.isnot(None),
        MemberPackage.start_date <= end_date,
        MemberPackage.end_date >= start_date,
    )
    if exclude_package_id is not None:
        query = query.filter(MemberPackage.id != exclude_package_id)
    clash = query.order_by(MemberPackage.start_date).first()
    if clash is None:
        return

    raise InvariantViolationError(
        f"Dates {start_date.isoformat()} to {end_date.isoformat()} overlap {clash.status} "
        f"{clash.package_type} package #{clash.id} ({clash.start_date.isoformat()} to "
        f"{clash.end_date.isoformat()}). Choose a range that starts after "
        f"{clash.end_date.isoformat()} or ends before {clash.start_date.isoformat()}.",
        code="DATE_RANGE_OVERLAP",
    )


def validate_create(request: CreatePackageRequest) -> Member:
    """
    Run rules 1-7 for a new package and return the locked member row.

    Must be called inside the transaction that performs the insert.
    """
    member = member_service.get_member(request.member_id, request.member_type, for_update=True)
    validate_structure(request.meals, request.terms)
    check_single_open_package(member.id, member.member_type)
    if isinstance(request.terms, DateRangeTerms):
        check_date_overlap(member.id, member.member_type, request.terms.start_date, request.terms.end_date)
    return member


def ensure_meal_counts_cover_consumption(package: MemberPackage, totals) -> None:
    """Edits may not push a total below what has already been consumed."""
    for meal in MEAL_TYPES:
        new_total = totals.get(meal)
        consumed = getattr(package, f"consumed_{meal}")
        if new_total < consumed:
            raise ValidationError(
                f"total_{meal} cannot be {new_total}: {consumed} {meal} meals have already been consumed",
                code="TOTAL_BELOW_CONSUMED",
            )
