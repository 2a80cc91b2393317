from scripts.bootstrap_admin import bootstrap_admin

from classgate.service.runtime import get_runtime
from classgate.storage.models import AuditAction, AuditFilter, Role

PASSWORD = "Secur3P@ssword"


def test_creates_admin():
    result = bootstrap_admin("Root@Example.com", PASSWORD)
    assert result["status"] == "created"
    runtime = get_runtime()
    account = runtime.store.get_account(result["user_id"])
    assert account.email == "root@example.com"
    assert account.role == Role.ADMIN
    assert account.is_email_verified
    assert runtime.auth.verify_password(account.id, PASSWORD)


def test_second_run_is_a_no_op():
    bootstrap_admin("root@example.com", PASSWORD)
    assert bootstrap_admin("root@example.com", PASSWORD)["status"] == "already_admin"


def test_promotes_existing_user():
    runtime = get_runtime()
    student = runtime.auth.provision_account(
        "teacher@example.com", PASSWORD, "Tea", "Cher", role=Role.STUDENT
    )
    assert bootstrap_admin("teacher@example.com", PASSWORD, dry_run=True)["status"] == "dry_run"
    assert runtime.store.get_account(student.id).role == Role.STUDENT

    result = bootstrap_admin("teacher@example.com", PASSWORD)
    assert result["status"] == "promoted"
    assert runtime.store.get_account(student.id).role == Role.ADMIN
    event = runtime.store.list_audit_events(AuditFilter(action=AuditAction.USER_ROLE_CHANGE))[0]
    assert event.details["source"] == "bootstrap"
    assert event.details["from"] == "student"
