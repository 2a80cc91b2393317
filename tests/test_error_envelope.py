"""Every failure path answers with the ``{message, code}`` body."""

import pytest
from fastapi.testclient import TestClient

from classgate import app as app_module
from classgate.service.runtime import get_runtime
from classgate.storage.models import Role

PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


def _admin_headers(client):
    get_runtime().auth.provision_account(
        "admin@example.com", PASSWORD, "Ada", "Admin", role=Role.ADMIN
    )
    resp = client.post("/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def test_unknown_route(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.json() == {"message": "Not Found", "code": "NOT_FOUND"}


def test_wrong_method(client):
    resp = client.delete("/auth/login")
    assert resp.status_code == 405
    assert resp.json()["code"] == "METHOD_NOT_ALLOWED"


def test_malformed_json(client):
    resp = client.post(
        "/auth/login", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_missing_fields_have_null_values(client):
    resp = client.post("/auth/register", json={"email": "a@example.com"})
    assert resp.status_code == 400
    errors = {e["field"]: e for e in resp.json()["errors"]}
    assert set(errors) >= {"password", "firstName", "lastName"}
    assert errors["firstName"]["value"] is None


def test_invalid_email_message(client):
    resp = client.post("/auth/login", json={"email": "not-an-email", "password": "x"})
    error = resp.json()["errors"][0]
    assert error == {
        "field": "email",
        "message": "Please provide a valid email address",
        "value": "not-an-email",
    }


def test_unhandled_error_is_generic(client, monkeypatch):
    headers = _admin_headers(client)

    def explode():
        raise RuntimeError("connection string postgres://secret@db")

    monkeypatch.setattr(get_runtime().admin, "health", explode)
    resp = client.get("/admin/health", headers=headers)
    assert resp.status_code == 500
    assert resp.json() == {"message": "Internal server error", "code": "INTERNAL_ERROR"}
