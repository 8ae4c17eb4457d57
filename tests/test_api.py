import pytest
from conftest import ADMIN_SECRET, STRONG_PASSWORD
from fastapi.testclient import TestClient

from realmauth.app import app
from realmauth.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app)


def _register_and_verify(client, email="api@example.com"):
    resp = client.post("/v1/accounts/register", json={"email": email, "password": STRONG_PASSWORD})
    assert resp.status_code == 201, resp.text
    token = get_runtime().store.get_account_by_email(email).verification.token
    verified = client.post("/v1/accounts/verify-email", json={"email": email, "token": token})
    assert verified.status_code == 200, verified.text
    return resp.json()["data"]


def test_healthz(client):
    assert client.get("/v1/healthz").json() == {"status": "ok"}


def test_register_returns_created_envelope(client):
    resp = client.post(
        "/v1/accounts/register", json={"email": "New@Example.com", "password": STRONG_PASSWORD}
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["email"] == "new@example.com"
    assert body["data"]["email_delivery"]["delivered"] is True
    assert body["request_id"]


def test_duplicate_registration_is_conflict(client):
    _register_and_verify(client)
    resp = client.post(
        "/v1/accounts/register", json={"email": "API@example.com", "password": STRONG_PASSWORD}
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_login_and_verify_session(client):
    _register_and_verify(client)
    login = client.post("/v1/accounts/login", json={"email": "api@example.com", "password": STRONG_PASSWORD})
    assert login.status_code == 200
    token = login.json()["data"]["session_token"]

    verified = client.post("/v1/sessions/verify", json={"token": token})
    assert verified.status_code == 200
    assert verified.json()["data"]["claims"]["iss"] == "realmauth"


def test_unverified_login_is_forbidden(client):
    client.post("/v1/accounts/register", json={"email": "wait@example.com", "password": STRONG_PASSWORD})
    resp = client.post("/v1/accounts/login", json={"email": "wait@example.com", "password": STRONG_PASSWORD})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "not_verified"


def test_failed_login_envelope(client):
    _register_and_verify(client)
    resp = client.post("/v1/accounts/login", json={"email": "api@example.com", "password": "Wrong-Pass1"})
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["message"] == "Email or password incorrect"
    assert body["error"]["details"] == {"remaining_attempts": 3}


def test_banned_login_returns_403_with_remaining_time(client):
    _register_and_verify(client)
    for _ in range(3):
        client.post("/v1/accounts/login", json={"email": "api@example.com", "password": "Wrong-Pass1"})
    resp = client.post("/v1/accounts/login", json={"email": "api@example.com", "password": "Wrong-Pass1"})
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "banned"
    assert 0 < error["details"]["remaining_seconds"] <= 30 * 60


def test_request_validation_uses_envelope(client):
    resp = client.post("/v1/accounts/login", json={"email": "x@example.com"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "invalid_input"
    assert any("password" in err["loc"] for err in body["error"]["details"])

    extra = client.post(
        "/v1/accounts/login",
        json={"email": "x@example.com", "password": STRONG_PASSWORD, "admin": True},
    )
    assert extra.status_code == 400


def test_unknown_route_uses_envelope(client):
    resp = client.get("/v1/nowhere")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_password_reset_request_is_anonymous(client):
    _register_and_verify(client)
    known = client.post("/v1/accounts/password-reset/request", json={"email": "api@example.com"})
    unknown = client.post("/v1/accounts/password-reset/request", json={"email": "ghost@example.com"})
    assert known.status_code == unknown.status_code == 200
    assert known.json()["message"] == unknown.json()["message"]
    assert known.json()["data"] == unknown.json()["data"] == {}


def test_account_status(client):
    _register_and_verify(client)
    resp = client.get("/v1/accounts/status", params={"email": "api@example.com"})
    assert resp.status_code == 200
    assert resp.json()["data"]["verified"] is True
    missing = client.get("/v1/accounts/status", params={"email": "ghost@example.com"})
    assert missing.status_code == 404


def test_invite_generation_requires_admin_secret(client):
    payload = {"count": 2, "purpose": "alpha"}
    denied = client.post("/v1/invites", json=payload)
    assert denied.status_code == 401

    wrong = client.post("/v1/invites", json=payload, headers={"X-Admin-Secret": "nope"})
    assert wrong.status_code == 401

    ok = client.post("/v1/invites", json=payload, headers={"X-Admin-Secret": ADMIN_SECRET})
    assert ok.status_code == 201
    assert len(ok.json()["data"]["codes"]) == 2

    too_few = client.post(
        "/v1/invites", json={"count": 0, "purpose": "alpha"}, headers={"X-Admin-Secret": ADMIN_SECRET}
    )
    assert too_few.status_code == 400


def test_redeem_and_alpha_access(client):
    registered = _register_and_verify(client)
    unique_hash = get_runtime().store.get_account(registered["account_id"]).unique_hash
    codes = client.post(
        "/v1/invites", json={"count": 1, "purpose": "alpha"}, headers={"X-Admin-Secret": ADMIN_SECRET}
    ).json()["data"]["codes"]

    before = client.get("/v1/accounts/alpha-access", params={"email": "api@example.com"})
    assert before.json()["data"]["granted"] is False

    redeemed = client.post(
        "/v1/invites/redeem",
        json={"code": codes[0], "email": "api@example.com", "unique_hash": unique_hash},
    )
    assert redeemed.status_code == 200
    assert redeemed.json()["data"] == {"purpose": "ALPHA", "times_used": 1}

    again = client.post(
        "/v1/invites/redeem",
        json={"code": codes[0], "email": "api@example.com", "unique_hash": unique_hash},
    )
    assert again.status_code == 409

    after = client.get("/v1/accounts/alpha-access", params={"email": "api@example.com"})
    assert after.json()["data"] == {"granted": True, "via": "invite_code"}

    lookup = client.get(f"/v1/invites/{codes[0]}", headers={"X-Admin-Secret": ADMIN_SECRET})
    assert lookup.status_code == 200
    assert lookup.json()["data"]["times_used"] == 1
    assert client.get(f"/v1/invites/{codes[0]}").status_code == 401


def test_request_id_header_is_echoed(client):
    resp = client.get("/v1/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
