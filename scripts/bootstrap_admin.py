#!/usr/bin/env python3
"""Create the first Classgate administrator, or promote an existing account.

Self registration never grants the admin role, so operators run this once
against a fresh deployment:

    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secur3P@ss' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secur3P@ss' --dry-run

Without DATABASE_URL the memory store snapshot under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

OUTCOMES = {
    "created": "Admin account created",
    "promoted": "Existing account promoted to admin",
    "already_admin": "Account is already an admin; nothing to do",
    "dry_run": "Dry run; no changes written",
}


def _promote(runtime, account) -> None:
    from classgate.storage.models import AuditAction, Role, Severity

    previous_role = account.role
    runtime.store.update_account(account.id, role=Role.ADMIN)
    runtime.audit.record(
        AuditAction.USER_ROLE_CHANGE,
        resource="User",
        resource_id=account.id,
        details={
            "targetUser": account.email,
            "from": previous_role.value,
            "to": Role.ADMIN.value,
            "source": "bootstrap",
        },
        severity=Severity.HIGH,
    )


def bootstrap_admin(
    email: str,
    password: str,
    first_name: str = "System",
    last_name: str = "Administrator",
    dry_run: bool = False,
) -> dict:
    """Returns ``{user_id, email, status}``; status is a key of ``OUTCOMES``."""
    # settings are read on first runtime access, after main() adjusted the env
    from classgate.service.runtime import get_runtime
    from classgate.storage.models import Role

    runtime = get_runtime()
    email = email.strip().lower()
    account = runtime.store.get_account_by_email(email)

    if account is not None and account.role == Role.ADMIN:
        status = "already_admin"
    elif dry_run:
        status = "dry_run"
    elif account is not None:
        _promote(runtime, account)
        status = "promoted"
    else:
        account = runtime.auth.provision_account(
            email, password, first_name, last_name, role=Role.ADMIN, source="bootstrap"
        )
        status = "created"
    return {"user_id": account.id if account else None, "email": email, "status": status}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Administrator")
    parser.add_argument("--dry-run", action="store_true")
    return parser


def main(argv=None) -> int:
    parser = _parser()
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("--email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")

    from classgate.api.schemas import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        parser.error(str(exc))

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
    # one-shot run; in-process rate limits are fine
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email, args.password, args.first_name, args.last_name, args.dry_run
        )
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"{OUTCOMES[result['status']]}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
