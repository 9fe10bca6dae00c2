# Overview: Service-layer operations for the daily-basis balance ledger.

"""
Balance Ledger (daily_basis packages)

Invariants:
- balance_transactions is append-only.
- member_packages.balance_cents == sum(deposits) - sum(debits) for the package.
- balance_cents changes only through deposit() / debit(), as a SQL-side
  increment in the same transaction as the transaction row. No
  read-modify-write in Python, so concurrent check-ins cannot lose updates.
- A debit never takes the balance below zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, select, update

from ..extensions import db
from ..models import BalanceTransaction, MemberPackage
from ..models.ledger import TRANSACTION_DEBIT, TRANSACTION_DEPOSIT
from ..models.packages import PACKAGE_DAILY_BASIS
from ..validation import (
    MAX_AMOUNT_CENTS,
    EntitlementExhaustedError,
    NotFoundError,
    ValidationError,
)
from mealpass.time_utils import today_utc
from .concurrency import atomic, lock_for_update
from .package_status import ensure_active


class InsufficientBalanceError(EntitlementExhaustedError):
    """The balance cannot cover a debit."""
    code = "INSUFFICIENT_BALANCE"


@dataclass(frozen=True)
class LedgerReconciliation:
    package_id: int
    stored_balance_cents: int
    ledger_balance_cents: int
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance_cents == self.ledger_balance_cents

    def to_dict(self) -> dict:
        return {
            "package_id": self.package_id,
            "stored_balance_cents": self.stored_balance_cents,
            "ledger_balance_cents": self.ledger_balance_cents,
            "transaction_count": self.transaction_count,
            "is_consistent": self.is_consistent,
        }


def _check_amount(amount_cents, label: str) -> int:
    if amount_cents is None or isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError(f"Valid {label} amount is required", code="INVALID_AMOUNT")
    if amount_cents <= 0:
        raise ValidationError(f"{label.capitalize()} amount must be greater than zero", code="INVALID_AMOUNT")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{label.capitalize()} amount cannot exceed {MAX_AMOUNT_CENTS}", code="INVALID_AMOUNT")
    return amount_cents


def _check_daily_basis(package: MemberPackage, action: str) -> None:
    if package.package_type != PACKAGE_DAILY_BASIS:
        raise ValidationError(
            f"{action} can only be applied to daily basis packages "
            f"(package {package.id} is {package.package_type})",
            code="NOT_DAILY_BASIS",
        )


def _current_balance(package_id: int) -> int:
    return db.session.execute(
        select(MemberPackage.balance_cents).where(MemberPackage.id == package_id)
    ).scalar_one()


def _append(package: MemberPackage, transaction_type: str, amount_cents: int, balance_after: int,
            description: str | None, meal_type: str | None) -> BalanceTransaction:
    if transaction_type == TRANSACTION_DEPOSIT:
        balance_before = balance_after - amount_cents
    else:
        balance_before = balance_after + amount_cents

    tx = BalanceTransaction(
        package_id=package.id,
        member_id=package.member_id,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        balance_before_cents=balance_before,
        balance_after_cents=balance_after,
        meal_type=meal_type,
        description=description,
    )
    db.session.add(tx)
    db.session.flush()
    # Pick up the new balance and updated_at on the ORM instance
    db.session.refresh(package)
    return tx


def deposit(package: MemberPackage, amount_cents: int, description: str | None = None) -> BalanceTransaction:
    """
    Add money to a daily_basis package inside the caller's transaction.

    Does not commit. Raises ValidationError for a non-positive amount or a
    package of another type.
    """
    amount_cents = _check_amount(amount_cents, "deposit")
    _check_daily_basis(package, "Deposits")
    db.session.flush()

    db.session.execute(
        update(MemberPackage)
        .where(MemberPackage.id == package.id)
        .values(balance_cents=MemberPackage.balance_cents + amount_cents)
        .execution_options(synchronize_session=False)
    )
    balance_after = _current_balance(package.id)
    return _append(package, TRANSACTION_DEPOSIT, amount_cents, balance_after, description or "Deposit", None)


def debit(
    package: MemberPackage,
    amount_cents: int,
    description: str | None = None,
    *,
    meal_type: str | None = None,
) -> BalanceTransaction:
    """
    Take money from a daily_basis package inside the caller's transaction.

    The sufficiency check is part of the UPDATE's WHERE clause, so two
    concurrent debits cannot both pass against the same stale balance.

    Raises:
        ValidationError: non-positive amount or not a daily_basis package
        InsufficientBalanceError: balance lower than the amount
    """
    amount_cents = _check_amount(amount_cents, "debit")
    _check_daily_basis(package, "Debits")
    db.session.flush()

    result = db.session.execute(
        update(MemberPackage)
        .where(MemberPackage.id == package.id, MemberPackage.balance_cents >= amount_cents)
        .values(balance_cents=MemberPackage.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = _current_balance(package.id)
        raise InsufficientBalanceError(
            f"Insufficient balance. Current: {current} cents, required: {amount_cents} cents. "
            "Add a deposit before recording this meal."
        )
    balance_after = _current_balance(package.id)
    return _append(package, TRANSACTION_DEBIT, amount_cents, balance_after, description, meal_type)


def record_deposit(
    package_id: int,
    amount_cents: int,
    description: str | None = None,
    *,
    today: date | None = None,
) -> tuple[MemberPackage, BalanceTransaction]:
    """
    Administrator deposit into an active daily_basis package.

    Returns the refreshed package and the appended transaction.
    """
    today = today or today_utc()
    amount_cents = _check_amount(amount_cents, "deposit")

    with atomic("Deposit"):
        package = lock_for_update(db.session.query(MemberPackage).filter_by(id=package_id)).first()
        if package is None:
            raise NotFoundError(f"Package {package_id} not found")
        _check_daily_basis(package, "Deposits")
        ensure_active(package, today, "add a deposit")
        tx = deposit(package, amount_cents, description)

    return package, tx


def reconcile(package_id: int) -> LedgerReconciliation:
    """Compare the stored balance with the sum of the package's transactions."""
    package = db.session.get(MemberPackage, package_id)
    if package is None:
        raise NotFoundError(f"Package {package_id} not found")

    signed = case(
        (BalanceTransaction.transaction_type == TRANSACTION_DEBIT, -BalanceTransaction.amount_cents),
        else_=BalanceTransaction.amount_cents,
    )
    ledger_total, count = db.session.execute(
        select(func.coalesce(func.sum(signed), 0), func.count(BalanceTransaction.id))
        .where(BalanceTransaction.package_id == package_id)
    ).one()

    return LedgerReconciliation(
        package_id=package.id,
        stored_balance_cents=package.balance_cents,
        ledger_balance_cents=int(ledger_total),
        transaction_count=int(count),
    )


def list_transactions(package_id: int) -> list[BalanceTransaction]:
    return (
        db.session.query(BalanceTransaction)
        .filter_by(package_id=package_id)
        .order_by(BalanceTransaction.id.desc())
        .all()
    )
