"""Admin console endpoints: dashboard, analytics, audit logs, settings, export."""

import pytest
from fastapi.testclient import TestClient

from classgate import app as app_module
from classgate.service.runtime import get_runtime
from classgate.storage.models import AuditAction, AuditFilter, Role, Severity

PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, email, role):
    account = get_runtime().auth.provision_account(email, PASSWORD, "Test", "User", role=role)
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.json()
    return account, {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def admin(client):
    return _login(client, "admin@example.com", Role.ADMIN)


@pytest.fixture
def instructor(client):
    return _login(client, "ins@example.com", Role.INSTRUCTOR)


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/admin/dashboard"),
        ("get", "/admin/analytics"),
        ("get", "/admin/audit-logs"),
        ("get", "/admin/users"),
        ("get", "/admin/settings"),
        ("get", "/admin/health"),
        ("get", "/admin/export/users"),
    ],
)
def test_instructor_is_denied(client, instructor, method, path):
    account, headers = instructor
    resp = getattr(client, method)(path, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "INSUFFICIENT_PERMISSIONS"
    event = get_runtime().store.list_audit_events(
        AuditFilter(action=AuditAction.UNAUTHORIZED_ACCESS)
    )[0]
    assert event.user_id == account.id
    assert event.severity == Severity.HIGH
    assert event.details["endpoint"] == path


def test_dashboard(client, admin, instructor):
    _, headers = admin
    resp = client.get("/admin/dashboard", headers=headers)
    assert resp.status_code == 200
    stats = resp.json()["stats"]
    users = stats["users"]
    assert users["total"] == 2
    assert users["active"] == 2
    assert users["inactive"] == 0
    assert users["newToday"] == 2
    assert users["newThisWeek"] == 2
    assert users["byRole"] == {"admin": 1, "instructor": 1, "student": 0}
    actions = [e["action"] for e in stats["recentActivity"]]
    assert "LOGIN" in actions and "USER_CREATE" in actions


def test_analytics(client, admin):
    account, headers = admin
    client.post("/auth/logout", headers=headers)
    resp = client.get("/admin/analytics", headers=headers, params={"days": 7})
    assert resp.status_code == 200
    analytics = resp.json()["analytics"]
    assert analytics["period"] == "7 days"
    assert sum(day["count"] for day in analytics["userRegistrations"]) == 1
    by_action = {item["action"]: item["count"] for item in analytics["activityByAction"]}
    assert by_action["LOGIN"] == 1
    assert by_action["LOGOUT"] == 1
    top = analytics["topActiveUsers"][0]
    assert top["user"]["id"] == account.id
    assert top["activityCount"] == 2


def test_analytics_days_bounds(client, admin):
    _, headers = admin
    assert client.get("/admin/analytics", headers=headers, params={"days": 0}).status_code == 400
    assert client.get("/admin/analytics", headers=headers, params={"days": 400}).status_code == 400


def test_audit_logs_filters_and_pages(client, admin):
    account, headers = admin
    for _ in range(3):
        client.post("/auth/logout", headers=headers)

    resp = client.get(
        "/admin/audit-logs", headers=headers, params={"action": "LOGOUT", "limit": 2, "page": 2}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["logs"]) == 1
    assert body["logs"][0]["action"] == "LOGOUT"
    assert body["pagination"]["total"] == 3
    assert body["pagination"]["hasPrev"] is True
    assert body["pagination"]["hasNext"] is False

    by_user = client.get("/admin/audit-logs", headers=headers, params={"userId": account.id})
    assert {log["userId"] for log in by_user.json()["logs"]} == {account.id}


def test_audit_logs_rejects_reversed_dates(client, admin):
    _, headers = admin
    resp = client.get(
        "/admin/audit-logs",
        headers=headers,
        params={"startDate": "2024-02-01T00:00:00Z", "endDate": "2024-01-01T00:00:00Z"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_DATE_RANGE"


def test_audit_logs_rejects_unknown_action(client, admin):
    _, headers = admin
    resp = client.get("/admin/audit-logs", headers=headers, params={"action": "NOPE"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_admin_users_mirrors_users_listing(client, admin, instructor):
    _, headers = admin
    resp = client.get("/admin/users", headers=headers, params={"role": "instructor"})
    assert resp.status_code == 200
    assert [u["email"] for u in resp.json()["users"]] == ["ins@example.com"]


def test_settings_read_and_update(client, admin):
    account, headers = admin
    resp = client.get("/admin/settings", headers=headers)
    assert resp.status_code == 200
    settings = resp.json()["settings"]
    assert settings["security"]["maxLoginAttempts"] == 5
    assert settings["security"]["passwordMinLength"] == 8
    assert settings["features"]["userRegistration"] is True

    resp = client.put(
        "/admin/settings",
        headers=headers,
        json={"security": {"maxLoginAttempts": 3}, "general": {"siteName": "Campus"}},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Settings updated successfully"
    assert body["settings"]["security"]["maxLoginAttempts"] == 3
    assert body["settings"]["general"]["siteName"] == "Campus"

    event = get_runtime().store.list_audit_events(
        AuditFilter(action=AuditAction.SYSTEM_CONFIG_UPDATE)
    )[0]
    assert event.user_id == account.id
    assert event.severity == Severity.HIGH
    assert event.details["updatedSettings"] == ["general", "security"]
    assert event.details["changes"]["security.maxLoginAttempts"] == {"from": 5, "to": 3}


def test_settings_change_lockout_policy(client, admin):
    _, headers = admin
    client.put("/admin/settings", headers=headers, json={"security": {"maxLoginAttempts": 2}})
    get_runtime().auth.provision_account(
        "victim@example.com", PASSWORD, "Vic", "Tim", role=Role.STUDENT
    )
    for _ in range(2):
        client.post("/auth/login", json={"email": "victim@example.com", "password": "Wrong!Pass1"})
    resp = client.post("/auth/login", json={"email": "victim@example.com", "password": PASSWORD})
    assert resp.status_code == 423


def test_settings_update_validation(client, admin):
    _, headers = admin
    resp = client.put("/admin/settings", headers=headers, json={"security": {"maxLoginAttempts": 50}})
    assert resp.status_code == 400
    assert resp.json()["errors"][0]["field"] == "security.maxLoginAttempts"

    empty = client.put("/admin/settings", headers=headers, json={})
    assert empty.status_code == 400
    assert empty.json()["code"] == "NO_SETTINGS"


def test_settings_never_expose_smtp_password(client, admin, monkeypatch):
    _, headers = admin
    runtime = get_runtime()
    original = runtime.system_settings._defaults

    def with_password():
        defaults = original()
        defaults["email"]["smtpPassword"] = "hunter2"
        return defaults

    monkeypatch.setattr(runtime.system_settings, "_defaults", with_password)
    resp = client.get("/admin/settings", headers=headers)
    assert resp.json()["settings"]["email"]["smtpPassword"] == "[REDACTED]"


def test_health(client, admin):
    _, headers = admin
    resp = client.get("/admin/health", headers=headers)
    assert resp.status_code == 200
    health = resp.json()["health"]
    assert health["status"] == "healthy"
    assert health["database"] == "connected"
    assert health["cache"] == "fallback"
    assert health["uptime"] >= 0
    assert health["version"] == get_runtime().settings.app_version


def test_export_users(client, admin, instructor):
    account, headers = admin
    resp = client.get("/admin/export/users", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "users"
    assert body["recordCount"] == 2
    assert {r["email"] for r in body["records"]} == {"admin@example.com", "ins@example.com"}
    assert all("password" not in key.lower() for r in body["records"] for key in r)

    event = get_runtime().store.list_audit_events(AuditFilter(action=AuditAction.DATA_EXPORT))[0]
    assert event.user_id == account.id
    assert event.details == {"exportType": "users", "recordCount": 2}


def test_export_audit_logs(client, admin):
    _, headers = admin
    resp = client.get("/admin/export/audit-logs", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "audit-logs"
    assert body["recordCount"] == len(body["records"]) >= 2


def test_export_unknown_type(client, admin):
    _, headers = admin
    resp = client.get("/admin/export/grades", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_EXPORT_TYPE"
