# backend/mealpass/routes/packages.py
"""
Member Package API Routes

Endpoints:
- GET    /api/packages                      - List packages (filters in query string)
- POST   /api/packages                      - Create a package
- POST   /api/packages/entitlement-preview  - Preview calendar entitlement, writes nothing
- GET    /api/packages/:id                  - Package detail with history and ledger
- PUT    /api/packages/:id                  - Edit a package in place
- DELETE /api/packages/:id                  - Hard delete a package
- POST   /api/packages/:id/renew            - Renew (closes this package, opens a new one)
- POST   /api/packages/:id/deactivate       - Suspend an active package
- POST   /api/packages/:id/reactivate       - Resume a deactivated package
- POST   /api/packages/:id/deposit          - Add money to a daily_basis package
- POST   /api/packages/:id/consume          - Record a meal check-in
- GET    /api/packages/:id/remaining        - Unused entitlement per meal
- GET    /api/packages/:id/reconcile        - Compare stored balance with the ledger

ERROR RESPONSES ({"error": message, "code": code}):
- 400 ValidationError
- 404 NotFoundError
- 409 InvariantViolationError, StateError
- 422 EntitlementExhaustedError (including InsufficientBalanceError)
- 503 StorageError (app-level handler)
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import balance_service, consumption_service, package_service
from ..services.package_requests import (
    parse_create_request,
    parse_meal_selection,
    parse_package_type,
    parse_terms,
)
from ..services.package_status import StateError
from ..services.concurrency import StorageError
from ..validation import (
    DomainError,
    EntitlementExhaustedError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
    coerce_int,
)
from mealpass.time_utils import today_utc


packages_bp = Blueprint("packages", __name__, url_prefix="/api/packages")


def _status_for(error: DomainError) -> int:
    # NotFoundError subclasses ValidationError, so it is checked first
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (InvariantViolationError, StateError)):
        return 409
    if isinstance(error, EntitlementExhaustedError):
        return 422
    return 400


def _error(error: DomainError):
    return jsonify(error.to_dict()), _status_for(error)


def _serialize(package, today=None) -> dict:
    data = package.to_dict()
    data["effective_status"] = package_service.get_effective_status(package, today or today_utc())
    data["remaining"] = consumption_service.remaining(package).to_dict()
    return data


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


@packages_bp.get("")
def list_packages_route():
    """
    List packages, newest first.

    Query parameters (all optional):
        member_id, member_type, package_type, status, is_active

    status / is_active filter on the effective status. An empty value means
    no filter. Listing never writes; lapsed packages are stamped expired by
    `flask packages expire-lapsed` or the next create for the member.
    """
    try:
        packages = package_service.list_packages(
            member_id=coerce_int("member_id", request.args.get("member_id")),
            member_type=request.args.get("member_type"),
            package_type=request.args.get("package_type"),
            status=request.args.get("status"),
            is_active=request.args.get("is_active"),
        )
        today = today_utc()
        return jsonify({
            "packages": [_serialize(p, today) for p in packages],
            "count": len(packages),
        }), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to list packages")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("")
def create_package_route():
    """
    Create a package for a member.

    Request body (by package_type):
        common:            member_id, member_type, package_type,
                           breakfast_enabled, lunch_enabled, dinner_enabled,
                           price_cents, discount_cents, notes
        full_time,
        partial_full_time: start_date, end_date, disabled_days,
                           disabled_meals, apply_weekend_policy
        partial:           total_breakfast, total_lunch, total_dinner
        daily_basis:       initial_deposit_cents, breakfast_price_cents,
                           lunch_price_cents, dinner_price_cents

    Response: 201 {"package": {...}}
    """
    try:
        create_request = parse_create_request(_json_body())
        package = package_service.create_package(create_request)
        current_app.logger.info(
            "Created %s package %s for %s member %s",
            package.package_type, package.id, package.member_type, package.member_id,
        )
        return jsonify({"package": _serialize(package)}), 201

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to create package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/entitlement-preview")
def entitlement_preview_route():
    """
    Entitlement a package would receive, without saving anything.

    Same body as create (member fields are ignored). For partial_full_time the
    weekend policy is applied, so the returned disabled_days is what create
    would store.
    """
    try:
        payload = _json_body()
        package_type = parse_package_type(payload.get("package_type"))
        meals = parse_meal_selection(payload)
        terms = parse_terms(package_type, payload)
        counts, disabled_days = package_service.preview_entitlement(meals, terms)
        return jsonify({
            "package_type": package_type,
            "counts": counts.to_dict(),
            "disabled_days": [d.isoformat() for d in sorted(disabled_days)],
        }), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to preview entitlement")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.get("/<int:package_id>")
def get_package_route(package_id: int):
    """
    Package detail.

    Response:
        {
            "package": {...},
            "history": [...],        // every entry for this member, oldest first
            "transactions": [...],   // newest first
            "consumptions": [...]    // newest first
        }
    """
    try:
        package = package_service.get_package(package_id)
        return jsonify({
            "package": _serialize(package),
            "history": [h.to_dict() for h in package_service.get_member_history(package)],
            "transactions": [t.to_dict() for t in balance_service.list_transactions(package.id)],
            "consumptions": [c.to_dict() for c in consumption_service.list_consumptions(package.id)],
        }), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to get package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.put("/<int:package_id>")
def update_package_route(package_id: int):
    """
    Edit a package in place.

    Enabled meals, package type, balance, status and consumption cannot be
    edited here; the response names the action to use instead.
    """
    try:
        package = package_service.update_package(package_id, _json_body())
        current_app.logger.info("Updated package %s", package.id)
        return jsonify({"package": _serialize(package)}), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to update package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.delete("/<int:package_id>")
def delete_package_route(package_id: int):
    """Hard delete. Allowed from any status; frees the member for a new package."""
    try:
        package_service.delete_package(package_id)
        current_app.logger.info("Deleted package %s", package_id)
        return jsonify({"message": f"Package {package_id} deleted"}), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to delete package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/<int:package_id>/renew")
def renew_package_route(package_id: int):
    """
    Renew a package.

    Body: new terms for the successor (package_type and enabled meals default
    to the renewed package's), plus carry_over for partial packages.

    Response: 201
        {
            "package": {...},              // the new package
            "previous_package_id": 12,
            "carry_over_summary": {"enabled": true, "breakfast": 3, "lunch": 0, "dinner": 1}
        }
    """
    try:
        result = package_service.renew_package(package_id, _json_body())
        current_app.logger.info(
            "Renewed package %s as %s (carry-over: %s)",
            result.previous_package_id, result.package.id, result.carried_over.total,
        )
        return jsonify({
            "package": _serialize(result.package),
            "previous_package_id": result.previous_package_id,
            "carry_over_summary": result.carry_over_summary(),
        }), 201

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to renew package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/<int:package_id>/deactivate")
def deactivate_package_route(package_id: int):
    """Body (optional): {"reason": "..."}"""
    try:
        payload = _json_body()
        package = package_service.deactivate_package(package_id, payload.get("reason"))
        current_app.logger.info("Deactivated package %s", package.id)
        return jsonify({
            "package": _serialize(package),
            "message": f"Package {package.id} deactivated",
        }), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to deactivate package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/<int:package_id>/reactivate")
def reactivate_package_route(package_id: int):
    try:
        package = package_service.reactivate_package(package_id)
        current_app.logger.info("Reactivated package %s", package.id)
        return jsonify({
            "package": _serialize(package),
            "message": f"Package {package.id} reactivated",
        }), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to reactivate package")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/<int:package_id>/deposit")
def deposit_route(package_id: int):
    """
    Body: {"amount_cents": 5000, "description": "Top-up"}

    Response: {"package": {...}, "transaction": {...}}
    """
    try:
        payload = _json_body()
        amount_cents = coerce_int("amount_cents", payload.get("amount_cents"))
        package, tx = balance_service.record_deposit(package_id, amount_cents, payload.get("description"))
        current_app.logger.info(
            "Deposit of %s cents to package %s (balance %s)",
            tx.amount_cents, package.id, tx.balance_after_cents,
        )
        return jsonify({"package": _serialize(package), "transaction": tx.to_dict()}), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to record deposit")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.post("/<int:package_id>/consume")
def consume_route(package_id: int):
    """
    Body: {"meal_type": "lunch", "notes": "..."}

    Response: {"package": {...}, "consumption": {...}}
    """
    try:
        payload = _json_body()
        package, record = consumption_service.record_meal_consumption(
            package_id,
            str(payload.get("meal_type") or "").strip().lower(),
            payload.get("notes"),
        )
        current_app.logger.info("Recorded %s for package %s", record.meal_type, package.id)
        return jsonify({"package": _serialize(package), "consumption": record.to_dict()}), 200

    except DomainError as e:
        return _error(e)
    except StorageError:
        raise
    except Exception:
        current_app.logger.exception("Failed to record meal consumption")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.get("/<int:package_id>/remaining")
def remaining_route(package_id: int):
    try:
        package = package_service.get_package(package_id)
        return jsonify({
            "package_id": package.id,
            "remaining": consumption_service.remaining(package).to_dict(),
        }), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to compute remaining meals")
        return jsonify({"error": "Internal server error"}), 500


@packages_bp.get("/<int:package_id>/reconcile")
def reconcile_route(package_id: int):
    try:
        result = balance_service.reconcile(package_id)
        if not result.is_consistent:
            current_app.logger.warning(
                "Ledger mismatch on package %s: stored %s, ledger %s",
                package_id, result.stored_balance_cents, result.ledger_balance_cents,
            )
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile ledger")
        return jsonify({"error": "Internal server error"}), 500
