"""End-to-end auth flows through the FastAPI app."""

import pytest
from fastapi.testclient import TestClient

from classgate import app as app_module
from classgate.service.runtime import get_runtime
from classgate.storage.models import AuditAction, AuditFilter, AuditStatus

PASSWORD = "Passw0rd!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", **overrides):
    body = {
        "email": email,
        "password": PASSWORD,
        "firstName": "Alice",
        "lastName": "Smith",
        **overrides,
    }
    return client.post("/auth/register", json=body)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_and_me(client):
    resp = _register(client, email="Alice@Example.com")
    assert resp.status_code == 201
    body = resp.json()
    assert body["message"] == "User registered successfully"
    assert body["user"]["email"] == "alice@example.com"
    assert body["user"]["role"] == "student"
    assert body["user"]["fullName"] == "Alice Smith"
    assert body["user"]["isEmailVerified"] is False
    assert "password" not in str(body["user"]).lower()

    me = client.get("/auth/me", headers=_auth(body["token"]))
    assert me.status_code == 200
    user = me.json()["user"]
    assert user["id"] == body["user"]["id"]
    assert user["preferences"] == {"notifications": True, "theme": "light", "language": "en"}


def test_register_instructor(client):
    resp = _register(client, role="instructor")
    assert resp.status_code == 201
    assert resp.json()["user"]["role"] == "instructor"


def test_register_admin_role_rejected(client):
    resp = _register(client, role="admin")
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["errors"][0]["field"] == "role"


def test_register_duplicate_email(client):
    assert _register(client).status_code == 201
    resp = _register(client, email="ALICE@example.com")
    assert resp.status_code == 400
    assert resp.json() == {
        "message": "User already exists with this email",
        "code": "USER_EXISTS",
    }


def test_register_weak_password_is_field_error(client):
    resp = _register(client, password="weak")
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation failed"
    error = body["errors"][0]
    assert error["field"] == "password"
    assert error["message"] == "Password must be at least 8 characters long"
    assert error["value"] == "[REDACTED]"


def test_register_password_confirmation_mismatch(client):
    resp = _register(client, confirmPassword="Different!1a")
    assert resp.status_code == 400
    fields = [e["field"] for e in resp.json()["errors"]]
    assert "confirmPassword" in fields


def test_login_lockout_scenario(client):
    assert _register(client).status_code == 201
    for attempt in range(5):
        resp = client.post(
            "/auth/login", json={"email": "alice@example.com", "password": "Wrong!Pass1"}
        )
        assert resp.status_code == 401, attempt
        assert resp.json()["code"] == "INVALID_CREDENTIALS"

    resp = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert resp.status_code == 423
    body = resp.json()
    assert body["code"] == "ACCOUNT_LOCKED"
    assert body["lockUntil"]

    store = get_runtime().store
    failures = store.list_audit_events(
        AuditFilter(action=AuditAction.LOGIN, status=AuditStatus.FAILURE), limit=10
    )
    assert len(failures) == 6
    assert failures[0].details["reason"] == "Account locked"


def test_login_unknown_email_matches_wrong_password(client):
    _register(client)
    unknown = client.post("/auth/login", json={"email": "bob@example.com", "password": PASSWORD})
    wrong = client.post(
        "/auth/login", json={"email": "alice@example.com", "password": "Wrong!Pass1"}
    )
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()


def test_login_success_sets_last_login(client):
    _register(client)
    resp = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Login successful"
    assert body["user"]["lastLogin"] is not None
    assert resp.headers["X-RateLimit-Limit"] == "10"


def test_logout(client):
    token = _register(client).json()["token"]
    resp = client.post("/auth/logout", headers=_auth(token))
    assert resp.status_code == 200
    assert resp.json() == {"message": "Logout successful"}


@pytest.mark.parametrize(
    "headers, code",
    [
        ({}, "TOKEN_REQUIRED"),
        ({"Authorization": "Token abc"}, "TOKEN_REQUIRED"),
        ({"Authorization": "Bearer garbage"}, "INVALID_TOKEN"),
    ],
)
def test_me_requires_valid_token(client, headers, code):
    resp = client.get("/auth/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["code"] == code


def test_verify_email_flow(client):
    _register(client)
    store = get_runtime().store
    token = store.get_account_by_email("alice@example.com").email_verification_token

    resp = client.post("/auth/verify-email", json={"token": token})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Email verified successfully"
    assert store.get_account_by_email("alice@example.com").is_email_verified

    again = client.post("/auth/verify-email", json={"token": token})
    assert again.status_code == 400
    assert again.json()["code"] == "INVALID_TOKEN"


def test_verify_email_missing_token(client):
    resp = client.post("/auth/verify-email", json={})
    assert resp.status_code == 400
    assert resp.json()["code"] == "TOKEN_REQUIRED"


def test_password_reset_flow(client):
    _register(client)
    unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})
    known = client.post("/auth/forgot-password", json={"email": "alice@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json() == known.json()

    store = get_runtime().store
    reset_token = store.get_account_by_email("alice@example.com").password_reset_token
    assert reset_token

    new_password = "N3w!Password"
    resp = client.post(
        "/auth/reset-password",
        json={"token": reset_token, "password": new_password, "confirmPassword": new_password},
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Password reset successfully"

    reused = client.post(
        "/auth/reset-password",
        json={"token": reset_token, "password": new_password, "confirmPassword": new_password},
    )
    assert reused.status_code == 400
    assert reused.json()["code"] == "INVALID_TOKEN"

    old = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    assert old.status_code == 401
    new = client.post("/auth/login", json={"email": "alice@example.com", "password": new_password})
    assert new.status_code == 200


def test_forgot_password_mail_failure(client, monkeypatch):
    _register(client)
    monkeypatch.setattr(get_runtime().email, "send", lambda *args: False)
    resp = client.post("/auth/forgot-password", json={"email": "alice@example.com"})
    assert resp.status_code == 500
    assert resp.json()["code"] == "EMAIL_SEND_ERROR"


def test_change_password(client):
    token = _register(client).json()["token"]
    wrong = client.post(
        "/auth/change-password",
        headers=_auth(token),
        json={
            "currentPassword": "Wrong!Pass1",
            "password": "N3w!Password",
            "confirmPassword": "N3w!Password",
        },
    )
    assert wrong.status_code == 400
    assert wrong.json()["code"] == "INVALID_CURRENT_PASSWORD"

    resp = client.post(
        "/auth/change-password",
        headers=_auth(token),
        json={
            "currentPassword": PASSWORD,
            "password": "N3w!Password",
            "confirmPassword": "N3w!Password",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Password changed successfully"


def test_registration_disabled(client):
    get_runtime().system_settings.update({"features": {"userRegistration": False}})
    resp = _register(client)
    assert resp.status_code == 403
    assert resp.json()["code"] == "REGISTRATION_DISABLED"


def test_forgot_password_rate_limited(client):
    statuses = [
        client.post("/auth/forgot-password", json={"email": "nobody@example.com"}).status_code
        for _ in range(6)
    ]
    assert statuses[:5] == [200] * 5
    assert statuses[5] == 429
    resp = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})
    assert resp.json()["code"] == "RATE_LIMITED"
    assert int(resp.headers["Retry-After"]) >= 1
    # buckets are per email
    other = client.post("/auth/forgot-password", json={"email": "someone@example.com"})
    assert other.status_code == 200


def test_response_headers(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
