# Overview: Effective-status computation and transition guards for member packages.

"""
Package Status Rules

================================================================================
PURPOSE: One place that decides what state a package is really in, and which
lifecycle transitions that state allows
================================================================================

STATE MACHINE:
    active --(end_date passes / sweep)--> expired
    active | expired --(renew)--> renewed      (date-bound: expired only)
    active --(deactivate)--> deactivated
    deactivated --(reactivate)--> active

    renewed is terminal. "reactivated" is an action recorded in history, not
    a state.

EFFECTIVE STATUS:
The stored status lags behind the calendar: a full_time / partial_full_time
package whose end_date has passed is expired even while its row still says
active. get_effective_status() is the only function that resolves this; every
read surface and every transition guard goes through it.
================================================================================
"""

from __future__ import annotations

from datetime import date

from ..models import MemberPackage
from ..models.packages import (
    PACKAGE_STATUSES,
    STATUS_ACTIVE,
    STATUS_DEACTIVATED,
    STATUS_EXPIRED,
    STATUS_RENEWED,
)
from ..validation import DomainError


class StateError(DomainError):
    """
    Raised when a lifecycle transition is not allowed from the package's
    effective status.

    This is a domain error, not a technical error; the message names what
    the administrator can do instead.
    """
    code = "INVALID_STATE"


def validate_status(status: str) -> None:
    if status not in PACKAGE_STATUSES:
        raise StateError(
            f"Invalid status '{status}'. Must be one of: {', '.join(PACKAGE_STATUSES)}"
        )


def is_lapsed(package: MemberPackage, today: date) -> bool:
    """True when a date-bound package's end_date is strictly before today."""
    return bool(package.is_date_bound and package.end_date is not None and package.end_date < today)


def get_effective_status(package: MemberPackage, today: date) -> str:
    """
    Status of the package as of `today`.

    - renewed / deactivated: as stored
    - stored expired, or is_active false: expired
    - date-bound and end_date < today: expired
    - otherwise: active

    Pure and read-only.
    """
    if package.status in (STATUS_RENEWED, STATUS_DEACTIVATED):
        return package.status
    if package.status == STATUS_EXPIRED or not package.is_active:
        return STATUS_EXPIRED
    if is_lapsed(package, today):
        return STATUS_EXPIRED
    return STATUS_ACTIVE


def ensure_can_renew(package: MemberPackage, today: date) -> str:
    """
    Renewal is allowed from active or expired, except that a date-bound
    package must have lapsed first so that two date ranges are never active
    together. Returns the effective status.
    """
    status = get_effective_status(package, today)
    if status == STATUS_RENEWED:
        raise StateError(
            f"Package {package.id} has already been renewed. Renew the newer package instead.",
            code="ALREADY_RENEWED",
        )
    if status == STATUS_DEACTIVATED:
        raise StateError(
            f"Package {package.id} is deactivated. Reactivate it or delete it before renewing.",
            code="RENEW_DEACTIVATED",
        )
    if status == STATUS_ACTIVE and package.is_date_bound:
        raise StateError(
            f"Package {package.id} is active until {package.end_date.isoformat()}. "
            "A date-range package can only be renewed after it expires.",
            code="RENEW_WHILE_ACTIVE",
        )
    return status


def ensure_can_deactivate(package: MemberPackage, today: date) -> None:
    status = get_effective_status(package, today)
    if status != STATUS_ACTIVE:
        raise StateError(
            f'Cannot deactivate a package with status "{status}". Only active packages can be deactivated.',
            code="DEACTIVATE_NOT_ACTIVE",
        )


def ensure_can_reactivate(package: MemberPackage, today: date) -> None:
    if package.status != STATUS_DEACTIVATED:
        raise StateError(
            f'Cannot reactivate a package with status "{get_effective_status(package, today)}". '
            "Only deactivated packages can be reactivated.",
            code="REACTIVATE_NOT_DEACTIVATED",
        )
    if is_lapsed(package, today):
        raise StateError(
            f"Cannot reactivate package {package.id}: its end date {package.end_date.isoformat()} "
            "has passed. Renew the package instead.",
            code="REACTIVATE_LAPSED",
        )


def ensure_active(package: MemberPackage, today: date, action: str) -> None:
    status = get_effective_status(package, today)
    if status != STATUS_ACTIVE:
        raise StateError(
            f'Cannot {action}: package {package.id} is {status}, not active.',
            code="PACKAGE_NOT_ACTIVE",
        )
