# Overview: Service-layer operations for meal check-ins against package entitlements.

from __future__ import annotations

from datetime import date

from sqlalchemy import update

from ..extensions import db
from ..models import MealConsumption, MemberPackage
from ..models.packages import MEAL_TYPES, PACKAGE_DAILY_BASIS
from ..validation import EntitlementExhaustedError, NotFoundError, ValidationError
from mealpass.time_utils import today_utc
from . import balance_service
from .calendar_service import MealCounts, is_day_fully_disabled, is_meal_disabled
from .concurrency import atomic, lock_for_update
from .package_status import ensure_active


def remaining(package: MemberPackage) -> MealCounts:
    """
    Unused entitlement per meal: total - consumed, floored at zero.
    Meals not enabled on the package report zero.
    """
    counts = {}
    for meal in MEAL_TYPES:
        if getattr(package, f"{meal}_enabled"):
            counts[meal] = max(0, getattr(package, f"total_{meal}") - getattr(package, f"consumed_{meal}"))
        else:
            counts[meal] = 0
    return MealCounts(**counts)


def _check_meal_allowed(package: MemberPackage, meal_type: str, today: date) -> None:
    if not getattr(package, f"{meal_type}_enabled"):
        raise ValidationError(f"{meal_type} is not enabled for this package", code="MEAL_NOT_ENABLED")

    if not package.is_date_bound:
        return

    if today < package.start_date or today > package.end_date:
        raise ValidationError(
            f"Today ({today.isoformat()}) is outside the package dates "
            f"{package.start_date.isoformat()} to {package.end_date.isoformat()}",
            code="OUTSIDE_DATE_RANGE",
        )
    if is_day_fully_disabled(today, package.enabled_meals(), package.disabled_days, package.disabled_meals):
        raise ValidationError(
            f"No meals are served on {today.isoformat()} for this package",
            code="MEAL_DISABLED_TODAY",
        )
    if is_meal_disabled(today, meal_type, package.disabled_days, package.disabled_meals):
        raise ValidationError(
            f"{meal_type} is disabled on {today.isoformat()} for this package",
            code="MEAL_DISABLED_TODAY",
        )


def _consume_entitlement(package: MemberPackage, meal_type: str) -> None:
    consumed_col = getattr(MemberPackage, f"consumed_{meal_type}")
    total_col = getattr(MemberPackage, f"total_{meal_type}")

    db.session.flush()
    result = db.session.execute(
        update(MemberPackage)
        .where(MemberPackage.id == package.id, consumed_col < total_col)
        .values({consumed_col: consumed_col + 1})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        used = getattr(package, f"consumed_{meal_type}")
        total = getattr(package, f"total_{meal_type}")
        raise EntitlementExhaustedError(
            f"No {meal_type} meals remaining. Used: {used}/{total}"
        )
    db.session.refresh(package)


def record_meal_consumption(
    package_id: int,
    meal_type: str,
    notes: str | None = None,
    *,
    today: date | None = None,
) -> tuple[MemberPackage, MealConsumption]:
    """
    Record one meal check-in.

    Fixed-entitlement packages (full_time, partial_full_time, partial)
    increment consumed_<meal>, refusing once it reaches total_<meal>.
    daily_basis packages are debited the package's price for that meal.

    Raises:
        ValidationError: bad meal type, meal not enabled, outside the date
            range or disabled today
        StateError: package not effectively active
        EntitlementExhaustedError: no meals of that type left
        InsufficientBalanceError: daily_basis balance below the meal price
    """
    today = today or today_utc()
    if meal_type not in MEAL_TYPES:
        raise ValidationError("Valid meal type is required (breakfast, lunch, dinner)", code="INVALID_MEAL_TYPE")

    with atomic("Meal check-in"):
        package = lock_for_update(db.session.query(MemberPackage).filter_by(id=package_id)).first()
        if package is None:
            raise NotFoundError(f"Package {package_id} not found")

        ensure_active(package, today, f"record {meal_type}")
        _check_meal_allowed(package, meal_type, today)

        record = MealConsumption(
            package_id=package.id,
            member_id=package.member_id,
            member_type=package.member_type,
            meal_type=meal_type,
            notes=notes,
            consumed_on=today,
        )

        if package.package_type == PACKAGE_DAILY_BASIS:
            price = getattr(package, f"{meal_type}_price_cents")
            if price <= 0:
                raise ValidationError(
                    f"No {meal_type} price is set on daily basis package {package.id}",
                    code="MEAL_PRICE_MISSING",
                )
            tx = balance_service.debit(
                package,
                price,
                f"{meal_type.capitalize()} consumption",
                meal_type=meal_type,
            )
            record.amount_deducted_cents = tx.amount_cents
            record.balance_after_cents = tx.balance_after_cents
        else:
            _consume_entitlement(package, meal_type)

        db.session.add(record)
        db.session.flush()

    return package, record


def list_consumptions(package_id: int) -> list[MealConsumption]:
    return (
        db.session.query(MealConsumption)
        .filter_by(package_id=package_id)
        .order_by(MealConsumption.id.desc())
        .all()
    )
