from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from classgate.logging import get_logger
from classgate.service.audit import AuditRecorder, RequestMeta
from classgate.service.errors import ConflictError, NotFoundError, ValidationError
from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import (
    Account,
    AccountQuery,
    AuditAction,
    AuditEvent,
    Role,
    Severity,
    utcnow,
)

logger = get_logger(__name__)

# snake_case attribute -> wire name, for audit details
_WIRE_NAMES = {
    "first_name": "firstName",
    "last_name": "lastName",
    "email": "email",
    "role": "role",
    "is_active": "isActive",
    "profile": "profile",
    "preferences": "preferences",
}
ADMIN_EDITABLE = frozenset({"first_name", "last_name", "email", "role", "is_active"})


class UserStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def search_accounts(self, query: AccountQuery) -> Tuple[List[Account], int]: ...

    def count_accounts(self, *, is_active: Optional[bool] = None, created_since: Any = None) -> int: ...

    def count_accounts_by_role(self) -> Dict[str, int]: ...


@dataclass
class UserStats:
    total_users: int
    active_users: int
    inactive_users: int
    new_users_this_month: int
    users_by_role: Dict[str, int]
    recent_users: List[Account] = field(default_factory=list)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Role) else value


class UserService:
    """Account administration and self-service profile edits."""

    def __init__(self, store: UserStore, audit: AuditRecorder) -> None:
        self.store = store
        self.audit = audit

    def search(self, query: AccountQuery) -> Tuple[List[Account], int]:
        return self.store.search_accounts(query)

    def get(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return account

    def update_profile(
        self,
        account: Account,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMeta] = None,
    ) -> Account:
        changes: Dict[str, Any] = {}
        if first_name is not None:
            changes["first_name"] = first_name
        if last_name is not None:
            changes["last_name"] = last_name
        if profile:
            changes["profile"] = {**account.profile, **profile}
        if preferences:
            changes["preferences"] = {**account.preferences, **preferences}
        if not changes:
            return account
        updated = self.store.update_account(account.id, **changes)
        if not updated:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        self.audit.record(
            AuditAction.USER_UPDATE,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"updatedFields": [_WIRE_NAMES[k] for k in changes]},
            severity=Severity.LOW,
            request=request,
        )
        return updated

    def admin_update(
        self,
        actor: Account,
        account_id: str,
        changes: Dict[str, Any],
        *,
        request: Optional[RequestMeta] = None,
    ) -> Account:
        unknown = set(changes) - ADMIN_EDITABLE
        if unknown:
            raise ValidationError(f"Fields not editable: {sorted(unknown)}")
        target = self.get(account_id)
        if changes.get("is_active") is False and target.id == actor.id:
            raise ValidationError(
                "Cannot deactivate your own account", error_code="CANNOT_DEACTIVATE_SELF"
            )
        diff = {
            _WIRE_NAMES[name]: {"from": _plain(getattr(target, name)), "to": _plain(value)}
            for name, value in changes.items()
            if _plain(getattr(target, name)) != _plain(value)
        }
        previous_role = target.role
        original_email = target.email
        try:
            updated = self.store.update_account(target.id, **changes) if changes else target
        except ConstraintViolation:
            raise ConflictError("Email already in use", error_code="USER_EXISTS")
        if not updated:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")

        self.audit.record(
            AuditAction.USER_UPDATE,
            actor_id=actor.id,
            resource="User",
            resource_id=target.id,
            details={
                "updatedFields": [_WIRE_NAMES[k] for k in changes],
                "targetUser": original_email,
                "changes": diff,
            },
            severity=Severity.MEDIUM,
            request=request,
        )
        if updated.role != previous_role:
            self.audit.record(
                AuditAction.USER_ROLE_CHANGE,
                actor_id=actor.id,
                resource="User",
                resource_id=target.id,
                details={
                    "targetUser": updated.email,
                    "from": previous_role.value,
                    "to": updated.role.value,
                },
                severity=Severity.HIGH,
                request=request,
            )
        return updated

    def delete(
        self, actor: Account, account_id: str, *, request: Optional[RequestMeta] = None
    ) -> Account:
        """Soft delete: deactivate and free the email for reuse."""
        if account_id == actor.id:
            raise ValidationError(
                "Cannot delete your own account", error_code="CANNOT_DELETE_SELF"
            )
        target = self.get(account_id)
        original_email = target.email
        tombstone = f"deleted_{int(time.time() * 1000)}_{original_email}"
        updated = self.store.update_account(target.id, is_active=False, email=tombstone)
        self.audit.record(
            AuditAction.USER_DELETE,
            actor_id=actor.id,
            resource="User",
            resource_id=target.id,
            details={"targetUser": original_email, "deletedBy": actor.email},
            severity=Severity.HIGH,
            request=request,
        )
        logger.info("account_soft_deleted", user_id=target.id, actor_id=actor.id)
        return updated or target

    def stats(self) -> UserStats:
        now = utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        by_role = {role.value: 0 for role in Role}
        by_role.update(self.store.count_accounts_by_role())
        total = self.store.count_accounts()
        active = self.store.count_accounts(is_active=True)
        recent, _ = self.store.search_accounts(AccountQuery(limit=10))
        return UserStats(
            total_users=total,
            active_users=active,
            inactive_users=total - active,
            new_users_this_month=self.store.count_accounts(created_since=month_start),
            users_by_role=by_role,
            recent_users=recent,
        )

    def activity(
        self, account_id: str, *, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[AuditEvent], Optional[str]]:
        self.get(account_id)
        return self.audit.user_activity(account_id, limit=limit, cursor=cursor)
