# Overview: Pytest coverage for the package HTTP API and its error mapping.

"""
Package API Tests

Exercise the /api/packages blueprint through the Flask test client:
- status codes for each error class (400 / 404 / 409 / 422)
- error body shape {"error", "code"}
- lifecycle endpoints end to end

Routes use the real business date, so every range here is relative to today.
"""

from datetime import timedelta

import pytest

from mealpass.time_utils import today_utc


def _iso(days_from_today: int) -> str:
    return (today_utc() + timedelta(days=days_from_today)).isoformat()


def _create(client, member, **fields):
    payload = {
        "member_id": member.id,
        "member_type": member.member_type,
        "package_type": "partial",
        "lunch_enabled": True,
        "total_lunch": 5,
    }
    payload.update(fields)
    return client.post("/api/packages", json=payload)


class TestCreateAndRead:
    def test_create_returns_201_with_effective_status(self, client, student):
        resp = _create(client, student)

        assert resp.status_code == 201
        package = resp.json["package"]
        assert package["status"] == "active"
        assert package["effective_status"] == "active"
        assert package["remaining"]["lunch"] == 5

    def test_create_full_time(self, client, student):
        resp = _create(
            client, student,
            package_type="full_time",
            start_date=_iso(0),
            end_date=_iso(6),
            breakfast_enabled=True,
        )

        assert resp.status_code == 201
        assert resp.json["package"]["total_breakfast"] == 7
        assert resp.json["package"]["total_lunch"] == 7

    def test_validation_error_is_400_with_code(self, client, student):
        resp = _create(client, student, lunch_enabled=False)

        assert resp.status_code == 400
        assert resp.json == {
            "error": "At least one meal (breakfast, lunch or dinner) must be enabled",
            "code": "NO_MEALS_ENABLED",
        }

    def test_bad_date_is_400(self, client, student):
        resp = _create(client, student, package_type="full_time", start_date="not-a-date", end_date=_iso(1))
        assert resp.status_code == 400

    def test_unknown_member_is_404(self, client, db_session):
        resp = client.post("/api/packages", json={
            "member_id": 4242, "member_type": "student", "package_type": "partial",
            "lunch_enabled": True, "total_lunch": 1,
        })
        assert resp.status_code == 404
        assert resp.json["code"] == "NOT_FOUND"

    def test_second_open_package_is_409(self, client, student):
        _create(client, student)
        resp = _create(client, student)

        assert resp.status_code == 409
        assert resp.json["code"] == "ACTIVE_PACKAGE_EXISTS"

    def test_detail_includes_history_and_ledger(self, client, student):
        created = _create(
            client, student,
            package_type="daily_basis",
            initial_deposit_cents=2000,
            lunch_price_cents=500,
        ).json["package"]

        resp = client.get(f"/api/packages/{created['id']}")

        assert resp.status_code == 200
        assert [h["action"] for h in resp.json["history"]] == ["created"]
        assert resp.json["transactions"][0]["amount_cents"] == 2000
        assert resp.json["consumptions"] == []

    def test_missing_package_is_404(self, client, db_session):
        assert client.get("/api/packages/999").status_code == 404

    def test_list_filters(self, client, student, faculty):
        _create(client, student)
        _create(client, faculty, package_type="full_time", start_date=_iso(-30), end_date=_iso(-1))

        active = client.get("/api/packages?is_active=true").json
        expired = client.get("/api/packages?status=expired").json

        assert active["count"] == 1
        assert active["packages"][0]["member_type"] == "student"
        assert expired["count"] == 1
        assert expired["packages"][0]["effective_status"] == "expired"

    def test_list_blank_is_active_means_no_filter(self, client, student, faculty):
        _create(client, student)
        _create(client, faculty, package_type="full_time", start_date=_iso(-30), end_date=_iso(-1))

        resp = client.get("/api/packages?is_active=&status=")

        assert resp.status_code == 200
        assert resp.json["count"] == 2

    def test_list_does_not_write(self, client, faculty):
        package_id = _create(
            client, faculty, package_type="full_time", start_date=_iso(-30), end_date=_iso(-1)
        ).json["package"]["id"]

        listed = client.get("/api/packages").json["packages"][0]
        detail = client.get(f"/api/packages/{package_id}").json

        assert listed["status"] == "active"
        assert listed["effective_status"] == "expired"
        assert [h["action"] for h in detail["history"]] == ["created"]

    def test_entitlement_preview(self, client, db_session):
        resp = client.post("/api/packages/entitlement-preview", json={
            "package_type": "full_time",
            "lunch_enabled": True,
            "dinner_enabled": True,
            "start_date": "2024-06-01",
            "end_date": "2024-06-07",
            "disabled_meals": {"2024-06-03": {"dinner": True}},
        })

        assert resp.status_code == 200
        assert resp.json["counts"] == {"breakfast": 0, "lunch": 7, "dinner": 6, "total": 13}


class TestLifecycleEndpoints:
    def test_deactivate_then_reactivate(self, client, student):
        package_id = _create(client, student).json["package"]["id"]

        resp = client.post(f"/api/packages/{package_id}/deactivate", json={"reason": "Leave of absence"})
        assert resp.status_code == 200
        assert resp.json["package"]["status"] == "deactivated"
        assert resp.json["package"]["deactivation_reason"] == "Leave of absence"

        resp = client.post(f"/api/packages/{package_id}/reactivate")
        assert resp.status_code == 200
        assert resp.json["package"]["effective_status"] == "active"

    def test_invalid_transition_is_409(self, client, student):
        package_id = _create(client, student).json["package"]["id"]

        resp = client.post(f"/api/packages/{package_id}/reactivate")

        assert resp.status_code == 409
        assert resp.json["code"] == "REACTIVATE_NOT_DEACTIVATED"

    def test_renew_partial_with_carry_over(self, client, student):
        package_id = _create(client, student, total_lunch=4).json["package"]["id"]
        client.post(f"/api/packages/{package_id}/consume", json={"meal_type": "lunch"})

        resp = client.post(f"/api/packages/{package_id}/renew", json={"carry_over": True, "total_lunch": 4})

        assert resp.status_code == 201
        assert resp.json["previous_package_id"] == package_id
        assert resp.json["carry_over_summary"] == {"enabled": True, "breakfast": 0, "lunch": 3, "dinner": 0}
        assert resp.json["package"]["total_lunch"] == 7

    def test_renew_active_full_time_is_409(self, client, student):
        package_id = _create(
            client, student, package_type="full_time", start_date=_iso(0), end_date=_iso(10)
        ).json["package"]["id"]

        resp = client.post(f"/api/packages/{package_id}/renew", json={"start_date": _iso(11), "end_date": _iso(20)})

        assert resp.status_code == 409
        assert resp.json["code"] == "RENEW_WHILE_ACTIVE"

    def test_renew_expired_full_time(self, client, student):
        package_id = _create(
            client, student, package_type="full_time", start_date=_iso(-10), end_date=_iso(-1)
        ).json["package"]["id"]

        resp = client.post(f"/api/packages/{package_id}/renew", json={"start_date": _iso(0), "end_date": _iso(4)})

        assert resp.status_code == 201
        assert resp.json["package"]["total_lunch"] == 5
        assert client.get(f"/api/packages/{package_id}").json["package"]["status"] == "renewed"

    def test_update_and_immutable_fields(self, client, student):
        package_id = _create(client, student).json["package"]["id"]

        resp = client.put(f"/api/packages/{package_id}", json={"total_lunch": 8, "price_cents": 12000})
        assert resp.status_code == 200
        assert resp.json["package"]["total_lunch"] == 8
        assert resp.json["package"]["price_cents"] == 12000

        resp = client.put(f"/api/packages/{package_id}", json={"package_type": "daily_basis"})
        assert resp.status_code == 400
        assert resp.json["code"] == "IMMUTABLE_FIELD"

    def test_delete_frees_member(self, client, student):
        package_id = _create(client, student).json["package"]["id"]

        assert client.delete(f"/api/packages/{package_id}").status_code == 200
        assert client.get(f"/api/packages/{package_id}").status_code == 404
        assert _create(client, student).status_code == 201


class TestMoneyAndCheckIns:
    @pytest.fixture
    def daily_id(self, client, student):
        return _create(
            client, student,
            package_type="daily_basis",
            initial_deposit_cents=600,
            lunch_price_cents=500,
        ).json["package"]["id"]

    def test_deposit_and_reconcile(self, client, daily_id):
        resp = client.post(f"/api/packages/{daily_id}/deposit", json={"amount_cents": 400, "description": "Cash"})

        assert resp.status_code == 200
        assert resp.json["transaction"]["balance_after_cents"] == 1000
        assert client.get(f"/api/packages/{daily_id}/reconcile").json["is_consistent"] is True

    def test_deposit_string_amount_is_coerced(self, client, daily_id):
        resp = client.post(f"/api/packages/{daily_id}/deposit", json={"amount_cents": "250"})
        assert resp.status_code == 200
        assert resp.json["package"]["balance_cents"] == 850

    def test_invalid_deposit_is_400(self, client, daily_id):
        resp = client.post(f"/api/packages/{daily_id}/deposit", json={"amount_cents": -5})
        assert resp.status_code == 400

    def test_insufficient_balance_is_422(self, client, daily_id):
        assert client.post(f"/api/packages/{daily_id}/consume", json={"meal_type": "lunch"}).status_code == 200

        resp = client.post(f"/api/packages/{daily_id}/consume", json={"meal_type": "lunch"})

        assert resp.status_code == 422
        assert resp.json["code"] == "INSUFFICIENT_BALANCE"

    def test_exhausted_entitlement_is_422(self, client, student):
        package_id = _create(client, student, total_lunch=1).json["package"]["id"]
        client.post(f"/api/packages/{package_id}/consume", json={"meal_type": "lunch"})

        resp = client.post(f"/api/packages/{package_id}/consume", json={"meal_type": "lunch"})

        assert resp.status_code == 422
        assert resp.json["code"] == "ENTITLEMENT_EXHAUSTED"
        assert client.get(f"/api/packages/{package_id}/remaining").json["remaining"]["lunch"] == 0

    def test_missing_meal_type_is_400(self, client, student):
        package_id = _create(client, student).json["package"]["id"]
        resp = client.post(f"/api/packages/{package_id}/consume", json={})
        assert resp.status_code == 400


def test_health(client, db_session):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json["status"] == "healthy"
    assert resp.json["checks"]["database"]["details"]["open_packages"] == 0
