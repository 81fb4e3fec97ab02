import pytest
from fastapi.testclient import TestClient

from kindgate.api.deps import reset_rate_limits, set_gateway_factory
from kindgate.app import app
from kindgate.config import get_settings

TOKEN = "test-parent-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def client(gateway, monkeypatch):
    # Configure parent token and clear cached settings
    monkeypatch.setenv("PARENT_API_TOKEN", TOKEN)
    get_settings.cache_clear()  # type: ignore[attr-defined]
    reset_rate_limits()
    set_gateway_factory(lambda: gateway)
    yield TestClient(app)
    set_gateway_factory(None)
    reset_rate_limits()
    get_settings.cache_clear()  # type: ignore[attr-defined]


def block_for_review(client, text="Tell me a scary ghost story", user_id="child_api"):
    res = client.post(
        "/api/validate/input", json={"text": text, "user_id": user_id}, headers=AUTH
    )
    assert res.status_code == 200
    return res.json()["review_request_id"]


def test_requires_bearer_token(client):
    res = client.get("/api/metrics")
    assert res.status_code == 401

    res = client.get("/api/metrics", headers={"Authorization": "Bearer wrong"})
    assert res.status_code == 403


def test_rate_limit(client, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "2")
    get_settings.cache_clear()  # type: ignore[attr-defined]

    assert client.get("/api/metrics", headers=AUTH).status_code == 200
    assert client.get("/api/metrics", headers=AUTH).status_code == 200
    res = client.get("/api/metrics", headers=AUTH)
    assert res.status_code == 429
    assert int(res.headers["retry-after"]) >= 1


def test_validate_input_and_output(client):
    res = client.post(
        "/api/validate/input",
        json={"text": "How to make a weapon", "user_id": "child_api"},
        headers=AUTH,
    )
    assert res.status_code == 200
    data = res.json()
    assert data["allowed"] is False
    assert data["risk_level"] == "high"
    assert data["refusal_message"]
    assert data["requires_parental_review"] is True

    res = client.post(
        "/api/validate/output",
        json={"text": "This is damn annoying", "user_id": "teen_api"},
        headers=AUTH,
    )
    assert res.status_code == 200
    assert res.json()["sanitized_text"] == "This is [friendly word] annoying"


def test_review_decision_flow(client):
    request_id = block_for_review(client)

    res = client.get("/api/reviews/pending", headers=AUTH)
    assert [r["id"] for r in res.json()] == [request_id]

    res = client.post(
        f"/api/reviews/{request_id}/decision",
        json={"approved": True, "reason": "Halloween", "exception_hours": 2},
        headers=AUTH,
    )
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "approved"
    assert data["exception_id"]

    res = client.get("/api/users/child_api/exceptions", headers=AUTH)
    assert len(res.json()) == 1

    # Terminal requests cannot be decided again
    res = client.post(
        f"/api/reviews/{request_id}/decision", json={"approved": False}, headers=AUTH
    )
    assert res.status_code == 409

    res = client.get(f"/api/reviews/{request_id}", headers=AUTH)
    assert res.json()["status"] == "approved"


def test_unknown_review(client):
    res = client.get("/api/reviews/review_missing", headers=AUTH)
    assert res.status_code == 404

    res = client.post(
        "/api/reviews/review_missing/decision", json={"approved": True}, headers=AUTH
    )
    assert res.status_code == 404


def test_manual_review_request(client):
    res = client.post(
        "/api/reviews",
        json={"content": "Can I watch a scary movie?", "user_id": "child_api"},
        headers=AUTH,
    )
    assert res.status_code == 201
    request_id = res.json()["request_id"]

    res = client.get(f"/api/reviews/{request_id}", headers=AUTH)
    assert res.json()["priority"] == "high"


def test_age_group_change_revokes_exceptions(client):
    request_id = block_for_review(client, user_id="kid_api")
    client.put("/api/users/kid_api/age-group", json={"age_group": "teen"}, headers=AUTH)
    client.post(f"/api/reviews/{request_id}/decision", json={"approved": True}, headers=AUTH)

    res = client.put(
        "/api/users/kid_api/age-group", json={"age_group": "child"}, headers=AUTH
    )
    assert res.status_code == 200
    assert res.json()["exceptions_revoked"] == 1

    res = client.get("/api/users/kid_api/exceptions", headers=AUTH)
    assert res.json() == []


def test_audit_and_report(client):
    block_for_review(client)

    res = client.get(
        "/api/audit",
        params={"user_id": "child_api", "event_type": "content_blocked"},
        headers=AUTH,
    )
    assert res.status_code == 200
    entries = res.json()
    assert len(entries) == 1
    assert entries[0]["parental_review_required"] is True

    res = client.get("/api/report", params={"user_id": "child_api"}, headers=AUTH)
    assert res.status_code == 200
    assert res.json()["pending_reviews"] == 1


def test_rules_export_import_round_trip(client):
    exported = client.get("/api/rules/export", headers=AUTH).json()
    assert exported["schema_version"] == "1.0"
    assert exported["checksum"]

    res = client.post("/api/rules/import", json=exported, headers=AUTH)
    assert res.status_code == 200
    assert res.json()["rule_set_version"] == exported["rule_set_version"] + 1


def test_invalid_import_rejected(client):
    exported = client.get("/api/rules/export", headers=AUTH).json()
    exported["checksum"] = None
    exported["rules"][0]["pattern"] = "(unclosed"

    res = client.post("/api/rules/import", json=exported, headers=AUTH)
    assert res.status_code == 422
    detail = res.json()["detail"]
    assert detail["message"] == "Invalid configuration"
    assert detail["errors"]

    # Active rules are untouched
    again = client.get("/api/rules/export", headers=AUTH).json()
    assert again["rule_set_version"] == exported["rule_set_version"]
