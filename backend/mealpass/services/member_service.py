# Overview: Member lookup used by the package core; registration itself lives elsewhere.

from __future__ import annotations

from ..extensions import db
from ..models import Member
from ..models.members import MEMBER_TYPES
from ..validation import NotFoundError, ValidationError
from .concurrency import lock_for_update


def _check_member_type(member_type: str | None) -> str:
    if not member_type:
        raise ValidationError("Member type is required")
    if member_type not in MEMBER_TYPES:
        raise ValidationError(
            f"Invalid member type '{member_type}'. Must be one of: {', '.join(MEMBER_TYPES)}"
        )
    return member_type


def get_member(member_id: int | None, member_type: str | None, *, for_update: bool = False) -> Member:
    """
    Resolve (member_id, member_type) to a Member.

    for_update=True locks the row so that package checks and writes for this
    member are serialized until the surrounding transaction ends.

    Raises:
        ValidationError: member not selected or member type invalid
        NotFoundError: no such member
    """
    if member_id is None:
        raise ValidationError("Member is required", code="MEMBER_REQUIRED")
    member_type = _check_member_type(member_type)

    query = db.session.query(Member).filter_by(id=member_id, member_type=member_type)
    if for_update:
        query = lock_for_update(query)
    member = query.first()
    if member is None:
        raise NotFoundError(f"{member_type.capitalize()} member {member_id} not found")
    return member


def create_member(
    *,
    member_type: str,
    natural_id: str,
    full_name: str,
    meals: tuple[str, ...] = ("breakfast", "lunch", "dinner"),
) -> Member:
    """Register a member (used by the CLI and tests). Caller commits."""
    member_type = _check_member_type(member_type)
    natural_id = (natural_id or "").strip()
    full_name = (full_name or "").strip()
    if not natural_id:
        raise ValidationError("natural_id is required")
    if not full_name:
        raise ValidationError("full_name is required")

    existing = db.session.query(Member).filter_by(member_type=member_type, natural_id=natural_id).first()
    if existing is not None:
        raise ValidationError(f"{member_type} with ID {natural_id} already exists", code="DUPLICATE_MEMBER")

    member = Member(
        member_type=member_type,
        natural_id=natural_id,
        full_name=full_name,
        prefers_breakfast="breakfast" in meals,
        prefers_lunch="lunch" in meals,
        prefers_dinner="dinner" in meals,
    )
    db.session.add(member)
    db.session.flush()
    return member


def list_members(member_type: str | None = None) -> list[Member]:
    query = db.session.query(Member)
    if member_type:
        query = query.filter_by(member_type=_check_member_type(member_type))
    return query.order_by(Member.member_type, Member.natural_id).all()
