from __future__ import annotations
from datetime import date
from mealpass.time_utils import parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


class DomainError(ValueError):
    """
    Base for rejections the administrator can act on.

    Every subclass carries a human-readable message and a machine-readable
    code; none of them are retried.
    """
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(DomainError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    """404-level: referenced member or package does not exist."""
    code = "NOT_FOUND"


class InvariantViolationError(DomainError):
    """409-level business rule conflict (one open package per member, date overlap)."""
    code = "INVARIANT_VIOLATION"


class EntitlementExhaustedError(DomainError):
    """422-level: a check-in would exceed what the package allows."""
    code = "ENTITLEMENT_EXHAUSTED"


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer for edits:
    - writable_fields: what clients are allowed to set (security boundary)
    - immutable_fields: fields that exist on the model but may never be patched,
      reported with their own message instead of "Field not allowed"
    """
    writable_fields: set[str]
    immutable_fields: dict[str, str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int | None:
    """Strict integer coercion: rejects floats, bools, decimals and scientific notation."""
    if value is None:
        return None
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_bool(key: str, value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
        raise ValidationError(f"{key} must be a boolean")
    if isinstance(value, int):
        return bool(value)
    raise ValidationError(f"{key} must be a boolean")


def coerce_date(key: str, value: Any) -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an ISO-8601 date (YYYY-MM-DD)")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        return coerce_bool(col.key, value)

    # Calendar dates
    if isinstance(coltype, Date):
        d = coerce_date(col.key, value)
        if d is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 date (YYYY-MM-DD)")
        return d

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    extra_fields: set[str] | None = None,
) -> dict:
    """
    Validates + normalizes an edit payload against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    Only the keys provided are validated. Returns a cleaned patch dict with
    only writable fields.

    extra_fields are allowed keys that are not model columns (e.g. relationship
    collections); they are passed through untouched for the caller to coerce.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    cols = _columns_by_key(model)
    extra_fields = extra_fields or set()
    immutable = policy.immutable_fields or {}

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k in immutable:
            raise ValidationError(immutable[k], code="IMMUTABLE_FIELD")
        if k in extra_fields:
            continue
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra_fields:
            patch[k] = raw
            continue

        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_money_rules(patch: dict) -> None:
    """
    Amount rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    for key, value in patch.items():
        if not key.endswith("_cents") or value is None:
            continue
        if not isinstance(value, int):
            raise ValidationError(f"{key} must be an integer")
        if value < 0:
            raise ValidationError(f"{key} must be >= 0")
        if value > MAX_AMOUNT_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_AMOUNT_CENTS}")
