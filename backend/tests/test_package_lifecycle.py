"""
Package lifecycle: create, validate, expire, renew, deactivate, reactivate,
edit and delete, exercised through package_service against SQLite.
"""

from datetime import date

import pytest

from mealpass.extensions import db
from mealpass.models import BalanceTransaction, MemberPackage, PackageHistory
from mealpass.services import balance_service, consumption_service, package_service, package_validation
from mealpass.services.concurrency import StorageError, atomic
from mealpass.services.package_requests import (
    DateRangeTerms,
    MealSelection,
    PartialTerms,
    parse_create_request,
)
from mealpass.services.package_status import StateError
from mealpass.services.calendar_service import MealCounts
from mealpass.validation import InvariantViolationError, NotFoundError, ValidationError

from conftest import TODAY


def _history_actions(package_id):
    return [
        h.action for h in db.session.query(PackageHistory)
        .filter_by(package_id=package_id)
        .order_by(PackageHistory.id)
    ]


def _package_count(member):
    return db.session.query(MemberPackage).filter_by(member_id=member.id).count()


# =============================================================================
# CREATE
# =============================================================================

def test_create_full_time_computes_totals_and_records_history(student, make_package):
    package = make_package(student, "full_time", start_date="2025-03-10", end_date="2025-03-16")

    assert package.status == "active"
    assert package.is_active is True
    assert (package.total_breakfast, package.total_lunch, package.total_dinner) == (0, 7, 0)
    assert _history_actions(package.id) == ["created"]


def test_scenario_d_partial_full_time_disables_weekends(student, make_package):
    package = make_package(
        student,
        "partial_full_time",
        today=date(2024, 6, 1),
        start_date="2024-06-01",
        end_date="2024-06-09",
    )

    assert package.disabled_days == frozenset({
        date(2024, 6, 1), date(2024, 6, 2), date(2024, 6, 8), date(2024, 6, 9),
    })
    assert package.total_lunch == 5


def test_weekend_policy_can_be_skipped(student, make_package):
    package = make_package(
        student,
        "partial_full_time",
        today=date(2024, 6, 1),
        start_date="2024-06-01",
        end_date="2024-06-09",
        apply_weekend_policy=False,
        disabled_days=["2024-06-05"],
    )

    assert package.disabled_days == frozenset({date(2024, 6, 5)})
    assert package.total_lunch == 8


def test_disable_sets_outside_range_are_dropped(student, make_package):
    package = make_package(
        student,
        "full_time",
        start_date="2025-03-10",
        end_date="2025-03-12",
        disabled_days=["2025-04-01"],
        disabled_meals={"2025-03-11": {"lunch": True}, "2025-05-01": {"lunch": True}},
    )

    assert package.disabled_days == frozenset()
    assert package.disabled_meals == {"2025-03-11": {"lunch": True}}
    assert package.total_lunch == 2


def test_partial_totals_for_disabled_meals_are_zeroed(student, make_package):
    package = make_package(student, "partial", total_lunch=10, total_dinner=4)

    assert package.total_lunch == 10
    assert package.total_dinner == 0


def test_scenario_f_second_active_package_rejected(student, make_package):
    make_package(student, "partial", total_lunch=5)

    with pytest.raises(InvariantViolationError) as exc:
        make_package(student, "partial", total_lunch=5)

    assert exc.value.code == "ACTIVE_PACKAGE_EXISTS"
    assert "Wait for it to expire or deactivate it" in exc.value.message
    assert _package_count(student) == 1


def test_open_package_index_rejects_second_open_package(student, make_package, monkeypatch):
    first = make_package(student, "partial", total_lunch=5)
    # Simulate a concurrent create that passed the open-package check before this one committed
    monkeypatch.setattr(package_validation, "check_single_open_package", lambda *args, **kwargs: None)

    with pytest.raises(StorageError) as exc:
        make_package(student, "daily_basis", initial_deposit_cents=1000)

    assert exc.value.code == "STORAGE_CONFLICT"
    assert _package_count(student) == 1
    assert db.session.query(PackageHistory).filter_by(member_id=student.id).count() == 1
    assert db.session.query(BalanceTransaction).filter_by(member_id=student.id).count() == 0
    assert package_service.get_package(first.id).status == "active"


def test_atomic_rolls_back_and_wraps_database_errors(student, make_package):
    package = make_package(student, "partial", total_lunch=5)

    with pytest.raises(StorageError) as exc:
        with atomic("Test write"):
            package.notes = "partial write"
            db.session.add(MemberPackage(member_id=student.id, member_type=student.member_type))
            db.session.flush()

    assert exc.value.code == "STORAGE_CONFLICT"
    assert exc.value.to_dict()["code"] == "STORAGE_CONFLICT"
    assert package_service.get_package(package.id).notes is None


def test_deactivated_package_blocks_create_with_delete_or_reactivate_message(student, make_package):
    first = make_package(student, "partial", total_lunch=5)
    package_service.deactivate_package(first.id, today=TODAY)

    with pytest.raises(InvariantViolationError) as exc:
        make_package(student, "partial", total_lunch=5)

    assert exc.value.code == "DEACTIVATED_PACKAGE_EXISTS"
    assert "Delete it or reactivate it" in exc.value.message


def test_overlap_with_expired_package_rejected(student, make_package):
    make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    with pytest.raises(InvariantViolationError) as exc:
        make_package(student, "full_time", today=date(2025, 2, 10), start_date="2025-01-20", end_date="2025-02-20")
    assert exc.value.code == "DATE_RANGE_OVERLAP"

    # Boundary day is inclusive
    with pytest.raises(InvariantViolationError):
        make_package(student, "full_time", today=date(2025, 2, 10), start_date="2025-01-31", end_date="2025-02-20")

    package = make_package(student, "full_time", today=date(2025, 2, 10), start_date="2025-02-01", end_date="2025-02-28")
    assert package.status == "active"


def test_create_sweeps_lapsed_package_to_expired(student, make_package):
    old = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    make_package(student, "partial", today=date(2025, 2, 10), total_lunch=3)

    db.session.refresh(old)
    assert old.status == "expired"
    assert old.is_active is False
    assert _history_actions(old.id) == ["created", "expired"]


def test_other_member_types_are_independent(student, faculty, make_package):
    make_package(student, "partial", total_lunch=5)
    package = make_package(faculty, "partial", total_lunch=5)
    assert package.member_type == "faculty"


@pytest.mark.parametrize(
    "package_type, fields, code",
    [
        ("partial", {"lunch_enabled": False, "total_lunch": 3}, "NO_MEALS_ENABLED"),
        ("full_time", {"end_date": "2025-03-20"}, "START_DATE_REQUIRED"),
        ("full_time", {"start_date": "2025-03-20"}, "END_DATE_REQUIRED"),
        ("full_time", {"start_date": "2025-03-20", "end_date": "2025-03-10"}, "INVALID_DATE_RANGE"),
        ("partial", {"total_breakfast": 5}, "NO_MEAL_COUNTS"),
        ("daily_basis", {"lunch_price_cents": 500}, "INITIAL_DEPOSIT_REQUIRED"),
        ("daily_basis", {"initial_deposit_cents": 0}, "INITIAL_DEPOSIT_REQUIRED"),
    ],
)
def test_structural_rules_reject_without_writing(student, make_package, package_type, fields, code):
    with pytest.raises(ValidationError) as exc:
        make_package(student, package_type, **fields)

    assert exc.value.code == code
    assert _package_count(student) == 0


def test_member_is_required(db_session):
    request = parse_create_request({"member_type": "student", "package_type": "partial", "lunch_enabled": True, "total_lunch": 1})
    with pytest.raises(ValidationError) as exc:
        package_service.create_package(request, today=TODAY)
    assert exc.value.code == "MEMBER_REQUIRED"


def test_unknown_member_not_found(db_session):
    request = parse_create_request({
        "member_id": 999, "member_type": "staff", "package_type": "partial",
        "lunch_enabled": True, "total_lunch": 1,
    })
    with pytest.raises(NotFoundError):
        package_service.create_package(request, today=TODAY)


def test_invalid_package_type_rejected():
    with pytest.raises(ValidationError):
        parse_create_request({"member_id": 1, "member_type": "student", "package_type": "weekly"})


# =============================================================================
# EFFECTIVE STATUS
# =============================================================================

@pytest.mark.parametrize(
    "package_type, status, is_active, end_date, expected",
    [
        ("full_time", "active", True, date(2025, 3, 10), "active"),
        ("full_time", "active", True, date(2025, 3, 9), "expired"),
        ("partial_full_time", "active", True, date(2025, 1, 1), "expired"),
        ("partial", "active", True, None, "active"),
        ("daily_basis", "active", False, None, "expired"),
        ("partial", "expired", False, None, "expired"),
        ("full_time", "renewed", False, date(2025, 1, 1), "renewed"),
        ("full_time", "deactivated", False, date(2025, 1, 1), "deactivated"),
        ("partial", "deactivated", False, None, "deactivated"),
    ],
)
def test_effective_status_table(package_type, status, is_active, end_date, expected):
    package = MemberPackage(package_type=package_type, status=status, is_active=is_active, end_date=end_date)
    assert package_service.get_effective_status(package, TODAY) == expected


# =============================================================================
# DEACTIVATE / REACTIVATE
# =============================================================================

def test_deactivate_reactivate_round_trip_preserves_data(student, make_package):
    package = make_package(student, "partial", total_lunch=10)
    consumption_service.record_meal_consumption(package.id, "lunch", today=TODAY)

    deactivated = package_service.deactivate_package(package.id, "Semester break", today=TODAY)
    assert deactivated.status == "deactivated"
    assert deactivated.is_active is False
    assert deactivated.deactivation_reason == "Semester break"

    reactivated = package_service.reactivate_package(package.id, today=TODAY)
    assert reactivated.status == "active"
    assert reactivated.is_active is True
    assert (reactivated.total_lunch, reactivated.consumed_lunch) == (10, 1)
    assert _history_actions(package.id) == ["created", "deactivated", "reactivated"]


def test_deactivate_requires_effective_active(student, make_package):
    package = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    with pytest.raises(StateError) as exc:
        package_service.deactivate_package(package.id, today=date(2025, 2, 1))
    assert exc.value.code == "DEACTIVATE_NOT_ACTIVE"


def test_reactivate_requires_deactivated(student, make_package):
    package = make_package(student, "partial", total_lunch=2)

    with pytest.raises(StateError) as exc:
        package_service.reactivate_package(package.id, today=TODAY)
    assert exc.value.code == "REACTIVATE_NOT_DEACTIVATED"


def test_reactivate_after_lapse_rejected(student, make_package):
    package = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")
    package_service.deactivate_package(package.id, today=date(2025, 1, 15))

    with pytest.raises(StateError) as exc:
        package_service.reactivate_package(package.id, today=date(2025, 2, 1))
    assert exc.value.code == "REACTIVATE_LAPSED"
    assert "Renew the package instead" in exc.value.message


# =============================================================================
# RENEW
# =============================================================================

def test_renewal_blocked_while_date_bound_active(student, make_package):
    package = make_package(student, "full_time", start_date="2025-03-01", end_date="2025-03-31")

    with pytest.raises(StateError) as exc:
        package_service.renew_package(package.id, {"start_date": "2025-04-01", "end_date": "2025-04-30"}, today=TODAY)
    assert exc.value.code == "RENEW_WHILE_ACTIVE"


def test_renew_expired_date_bound_package(student, make_package):
    old = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    result = package_service.renew_package(
        old.id, {"start_date": "2025-02-01", "end_date": "2025-02-07"}, today=date(2025, 2, 1)
    )

    db.session.refresh(old)
    assert old.status == "renewed"
    assert old.is_active is False
    assert result.package.carried_over_from_package_id == old.id
    assert result.package.package_type == "full_time"
    assert result.package.total_lunch == 7
    assert result.carried_over == MealCounts()
    assert _history_actions(old.id) == ["created", "renewed"]

    created = db.session.query(PackageHistory).filter_by(package_id=result.package.id).one()
    assert created.action == "created"
    assert created.previous_package_id == old.id


def test_renewal_range_must_not_overlap_previous(student, make_package):
    old = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    with pytest.raises(InvariantViolationError):
        package_service.renew_package(
            old.id, {"start_date": "2025-01-31", "end_date": "2025-02-07"}, today=date(2025, 2, 1)
        )

    db.session.refresh(old)
    assert old.status == "active"


def test_scenario_e_partial_renewal_with_carry_over(student, make_package):
    old = make_package(student, "partial", total_lunch=10)
    for _ in range(7):
        consumption_service.record_meal_consumption(old.id, "lunch", today=TODAY)

    result = package_service.renew_package(old.id, {"carry_over": True, "total_lunch": 10}, today=TODAY)

    assert result.package.total_lunch == 13
    assert result.package.carried_over_lunch == 3
    assert result.package.consumed_lunch == 0
    assert result.carry_over_summary() == {"enabled": True, "breakfast": 0, "lunch": 3, "dinner": 0}


def test_partial_renewal_without_carry_over(student, make_package):
    old = make_package(student, "partial", total_lunch=10)

    result = package_service.renew_package(old.id, {"total_lunch": 4}, today=TODAY)

    assert result.package.total_lunch == 4
    assert result.package.carried_over_lunch == 0
    assert result.carry_over_enabled is False


def test_carry_over_alone_satisfies_meal_count_rule(student, make_package):
    old = make_package(student, "partial", total_lunch=5)

    result = package_service.renew_package(old.id, {"carry_over": True}, today=TODAY)

    assert result.package.total_lunch == 5
    assert result.package.carried_over_lunch == 5


def test_carry_over_with_nothing_left_still_needs_counts(student, make_package):
    old = make_package(student, "partial", total_lunch=1)
    consumption_service.record_meal_consumption(old.id, "lunch", today=TODAY)

    with pytest.raises(ValidationError) as exc:
        package_service.renew_package(old.id, {"carry_over": True}, today=TODAY)

    assert exc.value.code == "NO_MEAL_COUNTS"
    db.session.refresh(old)
    assert old.status == "active"


def test_daily_basis_renewal_starts_from_fresh_deposit(student, make_package):
    old = make_package(student, "daily_basis", initial_deposit_cents=5000, lunch_price_cents=400)

    result = package_service.renew_package(old.id, {"initial_deposit_cents": 1000}, today=TODAY)

    assert result.package.balance_cents == 1000
    assert result.package.lunch_price_cents == 400
    assert balance_service.reconcile(result.package.id).is_consistent
    assert [tx.amount_cents for tx in balance_service.list_transactions(result.package.id)] == [1000]
    assert package_service.get_package(old.id).balance_cents == 5000


def test_renewal_may_change_type_and_meals(student, make_package):
    old = make_package(student, "partial", total_lunch=2)

    result = package_service.renew_package(
        old.id,
        {
            "package_type": "daily_basis",
            "breakfast_enabled": True,
            "initial_deposit_cents": 5000,
            "breakfast_price_cents": 300,
            "lunch_price_cents": 450,
        },
        today=TODAY,
    )

    assert result.package.package_type == "daily_basis"
    assert result.package.enabled_meals() == ("breakfast", "lunch")
    assert result.package.balance_cents == 5000


def test_carry_over_rejected_for_date_bound(student, make_package):
    old = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")

    with pytest.raises(ValidationError) as exc:
        package_service.renew_package(
            old.id,
            {"start_date": "2025-02-01", "end_date": "2025-02-07", "carry_over": True},
            today=date(2025, 2, 1),
        )
    assert exc.value.code == "CARRY_OVER_NOT_SUPPORTED"


def test_renewed_package_cannot_be_renewed_again(student, make_package):
    old = make_package(student, "partial", total_lunch=2)
    package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)

    with pytest.raises(StateError) as exc:
        package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)
    assert exc.value.code == "ALREADY_RENEWED"


def test_deactivated_package_cannot_be_renewed(student, make_package):
    old = make_package(student, "partial", total_lunch=2)
    package_service.deactivate_package(old.id, today=TODAY)

    with pytest.raises(StateError) as exc:
        package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)
    assert exc.value.code == "RENEW_DEACTIVATED"


# =============================================================================
# EDIT
# =============================================================================

def test_edit_dates_recomputes_totals(student, make_package):
    package = make_package(student, "full_time", start_date="2025-03-10", end_date="2025-03-16")

    updated = package_service.update_package(package.id, {"end_date": "2025-03-20", "notes": "extended"})

    assert updated.total_lunch == 11
    assert updated.notes == "extended"


def test_edit_does_not_reapply_weekend_policy(student, make_package):
    package = make_package(
        student, "partial_full_time", today=date(2024, 6, 1), start_date="2024-06-01", end_date="2024-06-09"
    )

    # Administrator re-enables the first weekend
    updated = package_service.update_package(package.id, {"disabled_days": ["2024-06-08", "2024-06-09"]})
    assert updated.total_lunch == 7

    updated = package_service.update_package(package.id, {"end_date": "2024-06-16"})
    assert updated.disabled_days == frozenset({date(2024, 6, 8), date(2024, 6, 9)})
    assert updated.total_lunch == 14


def test_edit_rejects_enabled_meal_change(student, make_package):
    package = make_package(student, "partial", total_lunch=3)

    with pytest.raises(ValidationError) as exc:
        package_service.update_package(package.id, {"breakfast_enabled": True})
    assert exc.value.code == "IMMUTABLE_FIELD"


def test_edit_rejects_balance_change(student, make_package):
    package = make_package(student, "daily_basis", initial_deposit_cents=1000, lunch_price_cents=100)

    with pytest.raises(ValidationError) as exc:
        package_service.update_package(package.id, {"balance_cents": 999999})
    assert exc.value.code == "IMMUTABLE_FIELD"


def test_edit_rejects_fields_of_other_types(student, make_package):
    package = make_package(student, "partial", total_lunch=3)

    with pytest.raises(ValidationError) as exc:
        package_service.update_package(package.id, {"start_date": "2025-03-10"})
    assert exc.value.code == "FIELD_NOT_APPLICABLE"


def test_edit_partial_total_not_below_consumed(student, make_package):
    package = make_package(student, "partial", total_lunch=3)
    consumption_service.record_meal_consumption(package.id, "lunch", today=TODAY)
    consumption_service.record_meal_consumption(package.id, "lunch", today=TODAY)

    with pytest.raises(ValidationError) as exc:
        package_service.update_package(package.id, {"total_lunch": 1})
    assert exc.value.code == "TOTAL_BELOW_CONSUMED"

    assert package_service.update_package(package.id, {"total_lunch": 2}).total_lunch == 2


def test_edit_dates_cannot_overlap_sibling(student, make_package):
    make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")
    current = make_package(student, "full_time", today=date(2025, 2, 1), start_date="2025-02-01", end_date="2025-02-28")

    with pytest.raises(InvariantViolationError):
        package_service.update_package(current.id, {"start_date": "2025-01-25"})


def test_edit_renewed_package_rejected(student, make_package):
    old = make_package(student, "partial", total_lunch=2)
    package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)

    with pytest.raises(StateError) as exc:
        package_service.update_package(old.id, {"notes": "late fix"})
    assert exc.value.code == "EDIT_RENEWED"


# =============================================================================
# DELETE / SWEEP / READS
# =============================================================================

def test_delete_frees_member_and_removes_children(student, make_package):
    package = make_package(student, "daily_basis", initial_deposit_cents=2000, lunch_price_cents=500)
    consumption_service.record_meal_consumption(package.id, "lunch", today=TODAY)
    package_id = package.id

    package_service.delete_package(package_id)

    assert db.session.get(MemberPackage, package_id) is None
    assert db.session.query(PackageHistory).filter_by(package_id=package_id).count() == 0
    assert package_service.list_packages(member_id=student.id, today=TODAY) == []

    replacement = make_package(student, "partial", total_lunch=5)
    assert replacement.status == "active"


def test_delete_renewed_predecessor_unlinks_successor(student, make_package):
    old = make_package(student, "partial", total_lunch=2)
    result = package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)

    package_service.delete_package(old.id)

    db.session.refresh(result.package)
    assert result.package.carried_over_from_package_id is None


def test_delete_missing_package(db_session):
    with pytest.raises(NotFoundError):
        package_service.delete_package(12345)


def test_expiry_sweep_stamps_only_lapsed_date_bound(student, faculty, make_package):
    lapsed = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")
    running = make_package(faculty, "partial", today=date(2025, 1, 1), total_lunch=5)

    expired = package_service.run_expiry_sweep(date(2025, 2, 1))

    assert [p.id for p in expired] == [lapsed.id]
    assert db.session.get(MemberPackage, running.id).status == "active"
    assert package_service.run_expiry_sweep(date(2025, 2, 1)) == []


def test_list_filters_on_effective_status(student, faculty, make_package):
    lapsed = make_package(student, "full_time", today=date(2025, 1, 1), start_date="2025-01-01", end_date="2025-01-31")
    running = make_package(faculty, "partial", total_lunch=5)

    active = package_service.list_packages(status="active", today=TODAY)
    expired = package_service.list_packages(is_active="false", today=TODAY)

    assert [p.id for p in active] == [running.id]
    assert [p.id for p in expired] == [lapsed.id]


def test_member_history_spans_packages(student, make_package):
    old = make_package(student, "partial", total_lunch=2)
    result = package_service.renew_package(old.id, {"total_lunch": 2}, today=TODAY)

    history = package_service.get_member_history(result.package)

    assert [(h.package_id, h.action) for h in history] == [
        (old.id, "created"),
        (old.id, "renewed"),
        (result.package.id, "created"),
    ]


def test_preview_applies_weekend_policy_without_writing(app):
    with app.app_context():
        counts, days = package_service.preview_entitlement(
            MealSelection(lunch=True),
            DateRangeTerms(
                package_type="partial_full_time",
                start_date=date(2024, 6, 1),
                end_date=date(2024, 6, 9),
            ),
        )
    assert counts.lunch == 5
    assert len(days) == 4


def test_preview_partial_echoes_enabled_totals():
    counts, days = package_service.preview_entitlement(
        MealSelection(breakfast=True),
        PartialTerms(totals=MealCounts(breakfast=4, lunch=9)),
    )
    assert counts == MealCounts(breakfast=4)
    assert days == frozenset()


def test_history_rejects_unknown_action(student, make_package):
    package = make_package(student, "partial", total_lunch=2)

    with pytest.raises(ValueError):
        package_service._append_history(package, "edited")
