from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from classgate.storage.models import Account, AuditEvent, Role

MAX_SEARCH_LENGTH = 100


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PASSWORD_COMPLEXITY = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])")
_NAME_PATTERN = re.compile(r"^[a-zA-Z\s'-]+$")
_PHONE_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]+$")
SORT_PATTERN = r"^[a-zA-Z_]+(:asc|:desc)?$"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Please provide a valid email address")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("Please provide a valid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please provide a valid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def validate_password_strength(value: str) -> str:
    """Minimum 8 characters with lower, upper, digit and one of ``@$!%*?&``."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not _PASSWORD_COMPLEXITY.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return value


def _validate_name(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not 2 <= len(trimmed) <= 50:
        raise ValueError(f"{label} must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(trimmed):
        raise ValueError(f"{label} can only contain letters, spaces, hyphens, and apostrophes")
    return trimmed


def _confirm_matches(value: Optional[str], info: ValidationInfo) -> Optional[str]:
    if value != info.data.get("password"):
        raise ValueError("Password confirmation does not match password")
    return value


# requests


class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role: Role = Role.STUDENT
    confirm_password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: str) -> str:
        return _validate_name(value, "firstName")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: str) -> str:
        return _validate_name(value, "lastName")

    @field_validator("role")
    @classmethod
    def _reject_admin(cls, value: Role) -> Role:
        # admins come from the bootstrap CLI or a promotion by another admin
        if value == Role.ADMIN:
            raise ValueError("Role must be student or instructor")
        return value

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirm(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return None
        return _confirm_matches(value, info)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationRequest(CamelModel):
    token: str = Field(default="", max_length=256)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirm(cls, value: str, info: ValidationInfo) -> str:
        return _confirm_matches(value, info)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("confirm_password")
    @classmethod
    def _validate_confirm(cls, value: str, info: ValidationInfo) -> str:
        return _confirm_matches(value, info)


class ProfileFields(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    bio: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=200)
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female", "other", "prefer-not-to-say"]] = None

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _PHONE_PATTERN.match(value):
            raise ValueError("Please provide a valid phone number")
        return value


class PreferenceFields(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    notifications: Optional[bool] = None
    theme: Optional[Literal["light", "dark"]] = None
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)


class ProfileUpdateRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile: Optional[ProfileFields] = None
    preferences: Optional[PreferenceFields] = None

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "firstName")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "lastName")


class AdminUserUpdateRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "firstName")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value, "lastName")

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually sent, keyed by attribute name."""
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class GeneralSettings(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    site_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    site_description: Optional[str] = Field(default=None, max_length=500)
    maintenance_mode: Optional[bool] = None


class SecuritySettings(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    max_login_attempts: Optional[int] = Field(default=None, ge=1, le=20)
    lockout_duration: Optional[int] = Field(default=None, ge=1, le=1440)
    session_timeout: Optional[int] = Field(default=None, ge=1, le=30)
    password_min_length: Optional[int] = Field(default=None, ge=8, le=128)


class FeatureSettings(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    user_registration: Optional[bool] = None
    email_verification: Optional[bool] = None


class SettingsUpdateRequest(CamelModel):
    general: Optional[GeneralSettings] = None
    security: Optional[SecuritySettings] = None
    features: Optional[FeatureSettings] = None

    def changes(self) -> Dict[str, Dict[str, Any]]:
        """Per-section camelCase changes, omitting unset values."""
        dumped = self.model_dump(by_alias=True, exclude_none=True)
        return {section: values for section, values in dumped.items() if values}


# responses


class PublicUser(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: Role
    is_email_verified: bool
    is_active: bool
    last_login: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "PublicUser":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            full_name=account.full_name,
            role=account.role,
            is_email_verified=account.is_email_verified,
            is_active=account.is_active,
            last_login=account.last_login,
        )


class UserProfile(PublicUser):
    profile: Dict[str, Any] = Field(default_factory=dict)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "UserProfile":
        base = PublicUser.from_account(account).model_dump()
        return cls(
            **base,
            profile=dict(account.profile),
            preferences=dict(account.preferences),
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class MessageResponse(CamelModel):
    message: str


class AuthResponse(CamelModel):
    message: str
    token: str
    user: PublicUser


class MeResponse(CamelModel):
    user: UserProfile


class UserResponse(CamelModel):
    user: UserProfile


class UserUpdateResponse(CamelModel):
    message: str
    user: UserProfile


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        pages = math.ceil(total / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        )


class UserListResponse(CamelModel):
    users: List[UserProfile]
    pagination: Pagination


class AuditEventOut(CamelModel):
    id: str
    action: str
    user_id: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: str
    status: str
    timestamp: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventOut":
        return cls(
            id=event.id,
            action=event.action.value,
            user_id=event.user_id,
            resource=event.resource,
            resource_id=event.resource_id,
            details=event.details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            severity=event.severity.value,
            status=event.status.value,
            timestamp=event.timestamp,
        )


class ActivityResponse(CamelModel):
    activity: List[AuditEventOut]
    next_cursor: Optional[str] = None


class UserStatsBody(CamelModel):
    total_users: int
    active_users: int
    inactive_users: int
    new_users_this_month: int
    users_by_role: Dict[str, int]
    recent_users: List[PublicUser]


class UserStatsResponse(CamelModel):
    stats: UserStatsBody


class AuditLogResponse(CamelModel):
    logs: List[AuditEventOut]
    pagination: Pagination


class DashboardUsers(CamelModel):
    total: int
    active: int
    inactive: int
    new_today: int
    new_this_week: int
    new_this_month: int
    by_role: Dict[str, int]


class DashboardBody(CamelModel):
    users: DashboardUsers
    recent_activity: List[AuditEventOut]


class DashboardResponse(CamelModel):
    stats: DashboardBody


class DailyCount(CamelModel):
    date: str
    count: int


class ActionCount(CamelModel):
    action: str
    count: int


class ActiveUser(CamelModel):
    user: PublicUser
    activity_count: int


class AnalyticsBody(CamelModel):
    period: str
    user_registrations: List[DailyCount]
    activity_by_action: List[ActionCount]
    top_active_users: List[ActiveUser]


class AnalyticsResponse(CamelModel):
    analytics: AnalyticsBody


class SettingsResponse(CamelModel):
    settings: Dict[str, Any]


class SettingsUpdateResponse(CamelModel):
    message: str
    settings: Dict[str, Any]


class HealthResponse(CamelModel):
    health: Dict[str, Any]


class ExportResponse(CamelModel):
    type: str
    record_count: int
    records: List[Dict[str, Any]]
