from decimal import Decimal

from fastapi.testclient import TestClient

from dues_service.api.dependencies import get_db
from dues_service.auth.jwt import get_current_principal
from dues_service.main import app
from dues_service.models.models import AuditLog


def _override_get_db(session):
    def _generator():
        try:
            yield session
        finally:
            pass

    return _generator


def _override_principal(principal):
    def _provider():
        return principal

    return _provider


def test_configuration_read_and_update(db_session, operator):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_principal] = _override_principal(operator)
    client = TestClient(app)
    try:
        current = client.get("/dues-config")
        assert current.status_code == 200
        assert current.json()["version"] == 1
        assert Decimal(current.json()["total_amount"]) == Decimal("100.00")
        assert [concept["key"] for concept in current.json()["concepts"]] == [
            "administracion",
            "mantenimiento",
            "seguridad",
            "limpieza",
        ]

        updated = client.put("/dues-config", json={"amounts": {"seguridad": "25.00"}})
        assert updated.status_code == 200
        assert updated.json()["version"] == 2
        assert Decimal(updated.json()["total_amount"]) == Decimal("105.00")

        unknown = client.put("/dues-config", json={"amounts": {"piscina": "5.00"}})
        assert unknown.status_code == 404

        negative = client.put("/dues-config", json={"amounts": {"seguridad": "-1"}})
        assert negative.status_code == 422

        versions = client.get("/dues-config/versions")
        assert [entry["version"] for entry in versions.json()] == [2, 1]
        assert versions.json()[0]["created_by_user_id"] == operator.user_id
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_concepts_can_be_added_and_removed(db_session, operator):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_principal] = _override_principal(operator)
    client = TestClient(app)
    try:
        added = client.post("/dues-config/concepts", json={"key": "piscina", "label": "Pool", "amount": "12.00"})
        assert added.status_code == 201
        assert Decimal(added.json()["total_amount"]) == Decimal("112.00")

        duplicate = client.post("/dues-config/concepts", json={"key": "piscina", "label": "Pool", "amount": "1.00"})
        assert duplicate.status_code == 409

        removed = client.delete("/dues-config/concepts/piscina")
        assert removed.status_code == 200
        assert all(concept["key"] != "piscina" for concept in removed.json()["concepts"])

        invalid_key = client.post("/dues-config/concepts", json={"key": "Bad Key", "label": "x"})
        assert invalid_key.status_code == 422
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_residents_cannot_change_configuration(db_session, resident_principal):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_principal] = _override_principal(resident_principal)
    client = TestClient(app)
    try:
        assert client.get("/dues-config").status_code == 200
        assert client.put("/dues-config", json={"amounts": {"seguridad": "1.00"}}).status_code == 403
        assert client.put("/dues-config/policy", json={"grace_period_days": 0}).status_code == 403
        assert db_session.query(AuditLog).count() == 0
    finally:
        app.dependency_overrides.clear()
        client.close()


def test_policy_read_and_update(db_session, operator):
    app.dependency_overrides[get_db] = _override_get_db(db_session)
    app.dependency_overrides[get_current_principal] = _override_principal(operator)
    client = TestClient(app)
    try:
        policy = client.get("/dues-config/policy")
        assert policy.status_code == 200
        assert policy.json()["grace_period_days"] == 5
        assert policy.json()["penalty_schedule_type"] == "linear"

        updated = client.put(
            "/dues-config/policy",
            json={
                "penalty_schedule_type": "stepped",
                "penalty_steps": [{"from_day": 1, "percent": 3}, {"from_day": 15, "percent": 8}],
                "max_penalty_percent": None,
            },
        )
        assert updated.status_code == 200
        payload = updated.json()
        assert payload["penalty_schedule_type"] == "stepped"
        assert payload["penalty_steps"] == [{"from_day": 1, "percent": 3.0}, {"from_day": 15, "percent": 8.0}]
        assert payload["max_penalty_percent"] is None
        assert payload["grace_period_days"] == 5

        invalid = client.put("/dues-config/policy", json={"penalty_schedule_type": "exponential"})
        assert invalid.status_code == 422
    finally:
        app.dependency_overrides.clear()
        client.close()
