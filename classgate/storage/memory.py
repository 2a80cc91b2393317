from __future__ import annotations

import json
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from classgate.logging import get_logger
from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import (
    Account,
    AccountQuery,
    AuditAction,
    AuditEvent,
    AuditFilter,
    AuditStatus,
    Role,
    Severity,
    default_preferences,
    utcnow,
)

# Columns callers may change through update_account
_UPDATABLE_FIELDS = frozenset({
    "email",
    "first_name",
    "last_name",
    "role",
    "is_active",
    "is_email_verified",
    "failed_login_count",
    "lock_until",
    "last_login",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expires",
    "profile",
    "preferences",
})

_DATETIME_FIELDS = ("lock_until", "last_login", "password_reset_expires", "created_at", "updated_at")


class MemoryStore:
    """In-process store with a JSON snapshot under ``fs_root/state``.

    Every public method holds ``_data_lock``, which makes read-modify-write
    sequences (failed-login counting in particular) atomic per process.
    """

    def __init__(self, fs_root: str = "/tmp/classgate") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.audit_events: List[AuditEvent] = []
        self.system_settings: Dict[str, Any] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return True

    # accounts
    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        lowered = email.lower()
        return any(
            acct.email.lower() == lowered and acct.id != exclude_id
            for acct in self.accounts.values()
        )

    def create_account(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        password_hash: str,
        password_algo: str,
        role: Role = Role.STUDENT,
        is_active: bool = True,
        is_email_verified: bool = False,
        email_verification_token: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, code="USER_EXISTS"
                )
            account = Account(
                id=str(uuid.uuid4()),
                email=email.lower(),
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                is_active=is_active,
                is_email_verified=is_email_verified,
                email_verification_token=email_verification_token,
            )
            self.accounts[account.id] = account
            self.credentials[account.id] = (password_hash, password_algo)
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email.lower() == lowered), None
            )

    def claim_verification_token(self, token: str) -> Optional[Account]:
        """Mark the token holder verified and clear the token in one step."""
        with self._data_lock:
            for account in self.accounts.values():
                if account.email_verification_token and account.email_verification_token == token:
                    account.is_email_verified = True
                    account.email_verification_token = None
                    account.updated_at = utcnow()
                    self._persist_state()
                    return account
            return None

    def claim_reset_token(self, token: str) -> Optional[Account]:
        """Clear an unexpired reset token and return its holder, at most once."""
        now = utcnow()
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.password_reset_token
                    and account.password_reset_token == token
                    and account.password_reset_expires is not None
                    and account.password_reset_expires > now
                ):
                    account.password_reset_token = None
                    account.password_reset_expires = None
                    account.updated_at = now
                    self._persist_state()
                    return account
            return None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].lower()
                if self._email_taken(fields["email"], exclude_id=account_id):
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}, code="USER_EXISTS"
                    )
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def register_failed_login(
        self, account_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]:
        """Count one failed password attempt and lock once the limit is hit.

        A lock that has already expired restarts the count at one.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            if account.lock_until is not None and account.lock_until <= now:
                account.failed_login_count = 1
                account.lock_until = None
            else:
                account.failed_login_count += 1
            if account.failed_login_count >= max_attempts and not account.is_locked(now):
                account.lock_until = now + lockout
            account.updated_at = now
            self._persist_state()
            return account

    def record_login_success(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            account.failed_login_count = 0
            account.lock_until = None
            account.last_login = now
            account.updated_at = now
            self._persist_state()
            return account

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    def search_accounts(self, query: AccountQuery) -> Tuple[List[Account], int]:
        with self._data_lock:
            matched = [a for a in self.accounts.values() if query.matches(a)]
        attribute = query.sort_field.attribute
        # None sorts last regardless of direction
        present = [a for a in matched if getattr(a, attribute) is not None]
        missing = [a for a in matched if getattr(a, attribute) is None]
        present.sort(
            key=lambda a: _sort_key(getattr(a, attribute)), reverse=query.descending
        )
        ordered = present + missing
        total = len(ordered)
        end = None if query.limit is None else query.offset + query.limit
        return ordered[query.offset:end], total

    def count_accounts(
        self,
        *,
        is_active: Optional[bool] = None,
        created_since: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.accounts.values()
                if (is_active is None or a.is_active == is_active)
                and (created_since is None or a.created_at >= created_since)
            )

    def count_accounts_by_role(self) -> Dict[str, int]:
        with self._data_lock:
            counts = Counter(a.role.value for a in self.accounts.values())
        return dict(counts)

    def registrations_by_day(self, since: datetime) -> List[Tuple[str, int]]:
        with self._data_lock:
            counts = Counter(
                a.created_at.date().isoformat()
                for a in self.accounts.values()
                if a.created_at >= since
            )
        return sorted(counts.items())

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
            return event

    def _newest_first(self, filters: Optional[AuditFilter]) -> List[AuditEvent]:
        with self._data_lock:
            events = list(reversed(self.audit_events))
        if filters is None:
            return events
        return [e for e in events if filters.matches(e)]

    def list_audit_events(
        self,
        filters: Optional[AuditFilter] = None,
        *,
        limit: int = 50,
        offset: int = 0,
        before: Optional[Tuple[datetime, str]] = None,
    ) -> List[AuditEvent]:
        events = self._newest_first(filters)
        if before is not None:
            before_ts, before_id = before
            ids = [e.id for e in events]
            if before_id in ids:
                events = events[ids.index(before_id) + 1:]
            else:
                events = [e for e in events if e.timestamp < before_ts]
        return events[offset:offset + limit]

    def count_audit_events(self, filters: Optional[AuditFilter] = None) -> int:
        return len(self._newest_first(filters))

    def audit_action_counts(self, since: datetime) -> List[Tuple[str, int]]:
        counts = Counter(
            e.action.value for e in self._newest_first(AuditFilter(start=since))
        )
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    def top_audit_actors(self, since: datetime, limit: int = 10) -> List[Tuple[str, int]]:
        counts = Counter(
            e.user_id
            for e in self._newest_first(AuditFilter(start=since))
            if e.user_id is not None
        )
        return counts.most_common(limit)

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return json.loads(json.dumps(self.system_settings))

    def set_system_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        with self._data_lock:
            self.system_settings = json.loads(json.dumps(settings))
            self._persist_state()
            return self.get_system_settings()

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.system_settings = data.get("system_settings", {})
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        data = {
            "id": account.id,
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "role": account.role.value,
            "is_active": account.is_active,
            "is_email_verified": account.is_email_verified,
            "failed_login_count": account.failed_login_count,
            "email_verification_token": account.email_verification_token,
            "password_reset_token": account.password_reset_token,
            "profile": account.profile,
            "preferences": account.preferences,
        }
        for name in _DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(account, name))
        return data

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=Role(data.get("role", Role.STUDENT.value)),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            failed_login_count=data.get("failed_login_count", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            email_verification_token=data.get("email_verification_token"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=self._deserialize_datetime(
                data.get("password_reset_expires")
            ),
            profile=data.get("profile") or {},
            preferences=data.get("preferences") or default_preferences(),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "action": event.action.value,
            "resource": event.resource,
            "resource_id": event.resource_id,
            "details": event.details,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "severity": event.severity.value,
            "status": event.status.value,
            "timestamp": self._serialize_datetime(event.timestamp),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            user_id=data.get("user_id"),
            action=AuditAction(data["action"]),
            resource=data.get("resource"),
            resource_id=data.get("resource_id"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            severity=Severity(data.get("severity", Severity.LOW.value)),
            status=AuditStatus(data.get("status", AuditStatus.SUCCESS.value)),
            timestamp=self._deserialize_datetime(data.get("timestamp")) or utcnow(),
        )


def _sort_key(value: Any) -> Any:
    if isinstance(value, Role):
        return value.value
    if isinstance(value, str):
        return value.lower()
    return value
