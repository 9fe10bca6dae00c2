from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_iso_date, to_utc_z


MEAL_TYPES = ("breakfast", "lunch", "dinner")

PACKAGE_FULL_TIME = "full_time"
PACKAGE_PARTIAL_FULL_TIME = "partial_full_time"
PACKAGE_PARTIAL = "partial"
PACKAGE_DAILY_BASIS = "daily_basis"

PACKAGE_TYPES = (PACKAGE_FULL_TIME, PACKAGE_PARTIAL_FULL_TIME, PACKAGE_PARTIAL, PACKAGE_DAILY_BASIS)
DATE_BOUND_TYPES = (PACKAGE_FULL_TIME, PACKAGE_PARTIAL_FULL_TIME)

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_RENEWED = "renewed"
STATUS_DEACTIVATED = "deactivated"

PACKAGE_STATUSES = (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_RENEWED, STATUS_DEACTIVATED)
# Statuses that occupy the member's single package slot
OPEN_STATUSES = (STATUS_ACTIVE, STATUS_DEACTIVATED)

HISTORY_ACTIONS = ("created", "expired", "renewed", "deactivated", "reactivated")


class MemberPackage(db.Model):
    """
    A member's meal package.

    TYPES:
    - full_time / partial_full_time: date-range bound, totals derived from the calendar
    - partial: flat meal counts entered by the administrator, no dates
    - daily_basis: no meal counts; a prepaid balance debited per meal

    STATUS: active -> expired | renewed | deactivated; deactivated -> active.
    The stored status is not authoritative for date-bound expiry; use
    package_service.get_effective_status().

    balance_cents is only ever changed by balance_service through SQL-side
    increments that also append a BalanceTransaction.
    """
    __tablename__ = "member_packages"
    __table_args__ = (
        # One open (active or deactivated) package per member
        db.Index(
            "uq_member_packages_open_per_member",
            "member_id",
            "member_type",
            unique=True,
            sqlite_where=db.text("status IN ('active', 'deactivated')"),
            postgresql_where=db.text("status IN ('active', 'deactivated')"),
        ),
        db.Index("ix_member_packages_member", "member_id", "member_type", "status"),
        db.CheckConstraint("consumed_breakfast <= total_breakfast", name="breakfast_within_total"),
        db.CheckConstraint("consumed_lunch <= total_lunch", name="lunch_within_total"),
        db.CheckConstraint("consumed_dinner <= total_dinner", name="dinner_within_total"),
        db.CheckConstraint("balance_cents >= 0", name="balance_non_negative"),
        db.CheckConstraint(
            "package_type IN ('full_time', 'partial_full_time', 'partial', 'daily_basis')",
            name="package_type_valid",
        ),
        db.CheckConstraint(
            "status IN ('active', 'expired', 'renewed', 'deactivated')",
            name="status_valid",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    member_type = db.Column(db.String(16), nullable=False)

    package_type = db.Column(db.String(32), nullable=False, index=True)

    breakfast_enabled = db.Column(db.Boolean, nullable=False, default=False)
    lunch_enabled = db.Column(db.Boolean, nullable=False, default=False)
    dinner_enabled = db.Column(db.Boolean, nullable=False, default=False)

    # Entitlement (zero for daily_basis)
    total_breakfast = db.Column(db.Integer, nullable=False, default=0)
    total_lunch = db.Column(db.Integer, nullable=False, default=0)
    total_dinner = db.Column(db.Integer, nullable=False, default=0)
    consumed_breakfast = db.Column(db.Integer, nullable=False, default=0)
    consumed_lunch = db.Column(db.Integer, nullable=False, default=0)
    consumed_dinner = db.Column(db.Integer, nullable=False, default=0)

    # Date range (full_time / partial_full_time only), inclusive
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    # {"YYYY-MM-DD": {"breakfast": bool, "lunch": bool, "dinner": bool}}
    disabled_meals = db.Column(db.JSON, nullable=False, default=dict)

    # Money (all amounts in cents)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    breakfast_price_cents = db.Column(db.Integer, nullable=False, default=0)
    lunch_price_cents = db.Column(db.Integer, nullable=False, default=0)
    dinner_price_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=STATUS_ACTIVE, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deactivation_reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Renewal linkage
    carried_over_from_package_id = db.Column(
        db.Integer,
        db.ForeignKey("member_packages.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    carried_over_breakfast = db.Column(db.Integer, nullable=False, default=0)
    carried_over_lunch = db.Column(db.Integer, nullable=False, default=0)
    carried_over_dinner = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    member = db.relationship("Member", backref=db.backref("packages", lazy=True))
    disabled_day_rows = db.relationship(
        "PackageDisabledDay",
        backref="package",
        cascade="all, delete-orphan",
        order_by="PackageDisabledDay.disabled_date",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_date_bound(self) -> bool:
        return self.package_type in DATE_BOUND_TYPES

    @property
    def disabled_days(self) -> frozenset:
        return frozenset(row.disabled_date for row in self.disabled_day_rows)

    def enabled_meals(self) -> tuple[str, ...]:
        return tuple(meal for meal in MEAL_TYPES if getattr(self, f"{meal}_enabled"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "member_type": self.member_type,
            "package_type": self.package_type,
            "breakfast_enabled": self.breakfast_enabled,
            "lunch_enabled": self.lunch_enabled,
            "dinner_enabled": self.dinner_enabled,
            "total_breakfast": self.total_breakfast,
            "total_lunch": self.total_lunch,
            "total_dinner": self.total_dinner,
            "consumed_breakfast": self.consumed_breakfast,
            "consumed_lunch": self.consumed_lunch,
            "consumed_dinner": self.consumed_dinner,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "disabled_days": [to_iso_date(d) for d in sorted(self.disabled_days)],
            "disabled_meals": dict(self.disabled_meals or {}),
            "price_cents": self.price_cents,
            "discount_cents": self.discount_cents,
            "balance_cents": self.balance_cents,
            "breakfast_price_cents": self.breakfast_price_cents,
            "lunch_price_cents": self.lunch_price_cents,
            "dinner_price_cents": self.dinner_price_cents,
            "status": self.status,
            "is_active": self.is_active,
            "deactivation_reason": self.deactivation_reason,
            "notes": self.notes,
            "carried_over_from_package_id": self.carried_over_from_package_id,
            "carried_over_breakfast": self.carried_over_breakfast,
            "carried_over_lunch": self.carried_over_lunch,
            "carried_over_dinner": self.carried_over_dinner,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class PackageDisabledDay(db.Model):
    """A calendar day fully excluded from a date-bound package's entitlement."""
    __tablename__ = "package_disabled_days"
    __table_args__ = (
        db.UniqueConstraint("package_id", "disabled_date", name="uq_package_disabled_days_package_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("member_packages.id", ondelete="CASCADE"), nullable=False, index=True)
    disabled_date = db.Column(db.Date, nullable=False)


class PackageHistory(db.Model):
    """
    Append-only snapshot of a package at each lifecycle transition.

    ACTIONS: created, expired, renewed, deactivated, reactivated

    IMMUTABLE: Records are never updated. They are removed only by the hard
    delete of their package.
    """
    __tablename__ = "package_history"
    __table_args__ = (
        db.Index("ix_package_history_member_created", "member_id", "member_type", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("member_packages.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = db.Column(db.Integer, nullable=False)
    member_type = db.Column(db.String(16), nullable=False)

    action = db.Column(db.String(16), nullable=False, index=True)
    package_type = db.Column(db.String(32), nullable=False)

    total_breakfast = db.Column(db.Integer, nullable=False, default=0)
    total_lunch = db.Column(db.Integer, nullable=False, default=0)
    total_dinner = db.Column(db.Integer, nullable=False, default=0)
    consumed_breakfast = db.Column(db.Integer, nullable=False, default=0)
    consumed_lunch = db.Column(db.Integer, nullable=False, default=0)
    consumed_dinner = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    # Set on the "created" entry of a package produced by renewal
    previous_package_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    package = db.relationship(
        "MemberPackage",
        backref=db.backref("history", cascade="all, delete-orphan", lazy=True, order_by="PackageHistory.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "package_id": self.package_id,
            "member_id": self.member_id,
            "member_type": self.member_type,
            "action": self.action,
            "package_type": self.package_type,
            "total_breakfast": self.total_breakfast,
            "total_lunch": self.total_lunch,
            "total_dinner": self.total_dinner,
            "consumed_breakfast": self.consumed_breakfast,
            "consumed_lunch": self.consumed_lunch,
            "consumed_dinner": self.consumed_dinner,
            "balance_cents": self.balance_cents,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "previous_package_id": self.previous_package_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
