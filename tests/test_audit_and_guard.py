import pytest

from classgate.logging import redact_sensitive
from classgate.service.audit import AuditRecorder, RequestMeta
from classgate.service.errors import AuthenticationError, ForbiddenError, ValidationError
from classgate.service.guard import AuthorizationGuard
from classgate.service.permissions import Permission
from classgate.storage.cursors import decode_time_id_cursor, encode_time_id_cursor
from classgate.storage.memory import MemoryStore
from classgate.storage.models import (
    AuditAction,
    AuditFilter,
    AuditStatus,
    Role,
    Severity,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def audit(store):
    return AuditRecorder(store)


@pytest.fixture
def guard(audit):
    return AuthorizationGuard(audit)


def _account(store, email, role):
    return store.create_account(
        email, "Test", "User", password_hash="h", password_algo="argon2id", role=role
    )


def test_record_redacts_secrets(audit, store):
    audit.record(
        AuditAction.SYSTEM_CONFIG_UPDATE,
        actor_id="admin-1",
        details={"smtpPassword": "hunter2", "passwordMinLength": 10, "nested": {"apiKey": "k"}},
        severity=Severity.HIGH,
        request=RequestMeta(ip_address="127.0.0.1", user_agent="pytest"),
    )
    event = store.list_audit_events()[0]
    assert event.details["smtpPassword"] == "[REDACTED]"
    assert event.details["passwordMinLength"] == 10
    assert event.details["nested"]["apiKey"] == "[REDACTED]"
    assert event.ip_address == "127.0.0.1"
    assert event.user_agent == "pytest"
    assert event.severity == Severity.HIGH


def test_record_propagates_store_failure(audit, store, monkeypatch):
    def broken(event):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "append_audit_event", broken)
    with pytest.raises(RuntimeError):
        audit.record(AuditAction.LOGIN, actor_id="u1")


def test_user_activity_pages_with_cursor(audit):
    for _ in range(5):
        audit.record(AuditAction.LOGIN, actor_id="u1")
    audit.record(AuditAction.LOGIN, actor_id="u2")

    first, cursor = audit.user_activity("u1", limit=3)
    assert len(first) == 3 and cursor
    second, cursor = audit.user_activity("u1", limit=3, cursor=cursor)
    assert len(second) == 2 and cursor is None
    assert not {e.id for e in first} & {e.id for e in second}


def test_user_activity_rejects_bad_cursor(audit):
    with pytest.raises(ValidationError) as excinfo:
        audit.user_activity("u1", cursor="%%%")
    assert excinfo.value.error_code == "INVALID_CURSOR"


def test_system_activity_pages_by_number(audit):
    for i in range(7):
        audit.record(AuditAction.LOGIN, actor_id=f"u{i}")
    events, total = audit.system_activity(page=2, limit=3)
    assert total == 7
    assert [e.user_id for e in events] == ["u3", "u2", "u1"]


def test_cursor_round_trip():
    now = utcnow()
    assert decode_time_id_cursor(encode_time_id_cursor(now, "evt-1")) == (now, "evt-1")


def test_redact_sensitive_leaves_lists_of_plain_values():
    assert redact_sensitive({"tags": ["a", "b"], "token": "t"}) == {
        "tags": ["a", "b"],
        "token": "[REDACTED]",
    }


class TestGuard:
    def test_require_roles_allows_listed_role(self, guard, store):
        admin = _account(store, "admin@example.com", Role.ADMIN)
        assert guard.require_roles(admin, [Role.ADMIN]) is admin
        assert store.count_audit_events() == 0

    def test_require_roles_denial_is_audited(self, guard, store):
        student = _account(store, "stu@example.com", Role.STUDENT)
        meta = RequestMeta(ip_address="10.1.1.1", method="GET", path="/admin/dashboard")
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_roles(student, [Role.ADMIN], meta)
        assert excinfo.value.error_code == "INSUFFICIENT_PERMISSIONS"
        assert excinfo.value.detail == {"required": ["admin"], "current": "student"}

        events = store.list_audit_events(AuditFilter(action=AuditAction.UNAUTHORIZED_ACCESS))
        assert len(events) == 1
        event = events[0]
        assert event.user_id == student.id
        assert event.severity == Severity.HIGH
        assert event.status == AuditStatus.FAILURE
        assert event.details["endpoint"] == "/admin/dashboard"
        assert event.details["method"] == "GET"
        assert event.details["userRole"] == "student"
        assert event.details["requiredRoles"] == ["admin"]

    def test_require_permission(self, guard, store):
        instructor = _account(store, "ins@example.com", Role.INSTRUCTOR)
        assert guard.require_permission(instructor, Permission.COURSE_CREATE) is instructor
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_permission(instructor, Permission.AUDIT_READ)
        assert excinfo.value.detail["required"] == "audit:read"
        event = store.list_audit_events()[0]
        assert event.details["requiredPermission"] == "audit:read"

    def test_admin_passes_every_permission(self, guard, store):
        admin = _account(store, "admin@example.com", Role.ADMIN)
        for permission in Permission:
            guard.require_permission(admin, permission)
        assert store.count_audit_events() == 0

    def test_require_ownership(self, guard, store):
        owner = _account(store, "own@example.com", Role.STUDENT)
        other = _account(store, "oth@example.com", Role.STUDENT)
        admin = _account(store, "admin@example.com", Role.ADMIN)
        assert guard.require_ownership(owner, owner.id) is owner
        assert guard.require_ownership(admin, owner.id) is admin
        with pytest.raises(ForbiddenError) as excinfo:
            guard.require_ownership(other, owner.id)
        assert excinfo.value.error_code == "NOT_RESOURCE_OWNER"
        assert store.list_audit_events()[0].details["resourceOwner"] == owner.id

    def test_unauthenticated_attempt_has_no_actor(self, guard, store):
        error = AuthenticationError("Access token required", error_code="TOKEN_REQUIRED")
        guard.record_unauthenticated(error, RequestMeta(method="GET", path="/auth/me"))
        event = store.list_audit_events()[0]
        assert event.user_id is None
        assert event.details["reason"] == "TOKEN_REQUIRED"
        assert event.details["userRole"] is None
