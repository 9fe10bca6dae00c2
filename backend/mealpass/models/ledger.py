from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z


TRANSACTION_DEPOSIT = "deposit"
TRANSACTION_DEBIT = "debit"


class BalanceTransaction(db.Model):
    """
    Append-only ledger of a daily_basis package's balance.

    TRANSACTION TYPES:
    - deposit: money added by an administrator (including the initial deposit)
    - debit: money taken for a meal check-in

    amount_cents is always positive; the sign comes from transaction_type.
    The package's balance_cents must equal sum(deposits) - sum(debits).

    IMMUTABLE: Records are never updated.
    """
    __tablename__ = "balance_transactions"
    __table_args__ = (
        db.Index("ix_balance_txns_package_occurred", "package_id", "occurred_at"),
        db.CheckConstraint("amount_cents > 0", name="amount_positive"),
        db.CheckConstraint("transaction_type IN ('deposit', 'debit')", name="transaction_type_valid"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("member_packages.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = db.Column(db.Integer, nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    meal_type = db.Column(db.String(16), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    package = db.relationship(
        "MemberPackage",
        backref=db.backref("transactions", cascade="all, delete-orphan", lazy=True, order_by="BalanceTransaction.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "package_id": self.package_id,
            "member_id": self.member_id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "meal_type": self.meal_type,
            "description": self.description,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class MealConsumption(db.Model):
    """
    One recorded meal check-in against a package.

    amount_deducted_cents / balance_after_cents are only set for daily_basis
    packages, where the check-in is paid from the balance.
    """
    __tablename__ = "meal_consumptions"
    __table_args__ = (
        db.Index("ix_meal_consumptions_package_consumed", "package_id", "consumed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("member_packages.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = db.Column(db.Integer, nullable=False, index=True)
    member_type = db.Column(db.String(16), nullable=False)

    meal_type = db.Column(db.String(16), nullable=False)
    amount_deducted_cents = db.Column(db.Integer, nullable=True)
    balance_after_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    consumed_on = db.Column(db.Date, nullable=False)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    package = db.relationship(
        "MemberPackage",
        backref=db.backref("consumptions", cascade="all, delete-orphan", lazy=True, order_by="MealConsumption.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "package_id": self.package_id,
            "member_id": self.member_id,
            "member_type": self.member_type,
            "meal_type": self.meal_type,
            "amount_deducted_cents": self.amount_deducted_cents,
            "balance_after_cents": self.balance_after_cents,
            "notes": self.notes,
            "consumed_on": self.consumed_on.isoformat() if self.consumed_on else None,
            "consumed_at": to_utc_z(self.consumed_at),
        }
