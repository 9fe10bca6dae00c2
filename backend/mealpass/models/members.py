from __future__ import annotations

from ..extensions import db
from mealpass.time_utils import to_utc_z


MEMBER_TYPES = ("student", "faculty", "staff")


class Member(db.Model):
    """
    Cafeteria program member (student, faculty or staff).

    Registration owns this data; the package core only reads it to resolve
    (member_id, member_type) and to serialize a display name. The row is also
    the lock target that serializes package creation for one member.
    """
    __tablename__ = "members"
    __table_args__ = (
        db.UniqueConstraint("member_type", "natural_id", name="uq_members_type_natural_id"),
        db.CheckConstraint("member_type IN ('student', 'faculty', 'staff')", name="member_type_valid"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    member_type = db.Column(db.String(16), nullable=False, index=True)

    # Roll number for students, employee ID for faculty/staff
    natural_id = db.Column(db.String(64), nullable=False)
    full_name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Meal-plan preference captured at registration
    prefers_breakfast = db.Column(db.Boolean, nullable=False, default=True)
    prefers_lunch = db.Column(db.Boolean, nullable=False, default=True)
    prefers_dinner = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def preferred_meals(self) -> tuple[str, ...]:
        meals = []
        if self.prefers_breakfast:
            meals.append("breakfast")
        if self.prefers_lunch:
            meals.append("lunch")
        if self.prefers_dinner:
            meals.append("dinner")
        return tuple(meals)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_type": self.member_type,
            "natural_id": self.natural_id,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "preferred_meals": list(self.preferred_meals()),
            "created_at": to_utc_z(self.created_at),
        }
