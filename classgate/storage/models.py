from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFY = "EMAIL_VERIFY"
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_ROLE_CHANGE = "USER_ROLE_CHANGE"
    COURSE_CREATE = "COURSE_CREATE"
    COURSE_UPDATE = "COURSE_UPDATE"
    COURSE_DELETE = "COURSE_DELETE"
    COURSE_PUBLISH = "COURSE_PUBLISH"
    COURSE_UNPUBLISH = "COURSE_UNPUBLISH"
    ASSIGNMENT_CREATE = "ASSIGNMENT_CREATE"
    ASSIGNMENT_UPDATE = "ASSIGNMENT_UPDATE"
    ASSIGNMENT_DELETE = "ASSIGNMENT_DELETE"
    ASSIGNMENT_SUBMIT = "ASSIGNMENT_SUBMIT"
    GRADE_CREATE = "GRADE_CREATE"
    GRADE_UPDATE = "GRADE_UPDATE"
    ENROLLMENT_CREATE = "ENROLLMENT_CREATE"
    ENROLLMENT_DELETE = "ENROLLMENT_DELETE"
    SYSTEM_CONFIG_UPDATE = "SYSTEM_CONFIG_UPDATE"
    BACKUP_CREATE = "BACKUP_CREATE"
    BACKUP_RESTORE = "BACKUP_RESTORE"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


def default_preferences() -> Dict:
    return {"notifications": True, "theme": "light", "language": "en"}


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.STUDENT
    is_active: bool = True
    is_email_verified: bool = False
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    profile: Dict = field(default_factory=dict)
    preferences: Dict = field(default_factory=default_preferences)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lock_until is None:
            return False
        return self.lock_until > (now or utcnow())


@dataclass
class AuditEvent:
    """One append-only audit record. ``user_id`` is None for anonymous actors."""

    id: str
    action: AuditAction
    user_id: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: Severity = Severity.LOW
    status: AuditStatus = AuditStatus.SUCCESS
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AuditFilter:
    """Optional audit query criteria; unset fields do not constrain."""

    action: Optional[AuditAction] = None
    resource: Optional[str] = None
    severity: Optional[Severity] = None
    status: Optional[AuditStatus] = None
    user_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.action is not None and event.action != self.action:
            return False
        if self.resource is not None and event.resource != self.resource:
            return False
        if self.severity is not None and event.severity != self.severity:
            return False
        if self.status is not None and event.status != self.status:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.start is not None and event.timestamp < self.start:
            return False
        if self.end is not None and event.timestamp > self.end:
            return False
        return True


class AccountSortField(str, Enum):
    CREATED_AT = "createdAt"
    EMAIL = "email"
    FIRST_NAME = "firstName"
    LAST_NAME = "lastName"
    LAST_LOGIN = "lastLogin"
    ROLE = "role"

    @property
    def attribute(self) -> str:
        return {
            "createdAt": "created_at",
            "email": "email",
            "firstName": "first_name",
            "lastName": "last_name",
            "lastLogin": "last_login",
            "role": "role",
        }[self.value]


@dataclass
class AccountQuery:
    """Account search criteria. ``limit=None`` returns every match."""

    text: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    sort_field: AccountSortField = AccountSortField.CREATED_AT
    descending: bool = True
    offset: int = 0
    limit: Optional[int] = 10

    def matches(self, account: Account) -> bool:
        if self.role is not None and account.role != self.role:
            return False
        if self.is_active is not None and account.is_active != self.is_active:
            return False
        if self.text:
            needle = self.text.lower()
            haystack = (account.first_name, account.last_name, account.email)
            if not any(needle in value.lower() for value in haystack):
                return False
        return True
