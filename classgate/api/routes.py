from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from classgate.api.schemas import (
    MAX_SEARCH_LENGTH,
    SORT_PATTERN,
    ActionCount,
    ActiveUser,
    ActivityResponse,
    AdminUserUpdateRequest,
    AnalyticsBody,
    AnalyticsResponse,
    AuditEventOut,
    AuditLogResponse,
    AuthResponse,
    ChangePasswordRequest,
    DailyCount,
    DashboardBody,
    DashboardResponse,
    DashboardUsers,
    EmailVerificationRequest,
    ExportResponse,
    ForgotPasswordRequest,
    HealthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    Pagination,
    ProfileUpdateRequest,
    PublicUser,
    RegisterRequest,
    ResetPasswordRequest,
    SettingsResponse,
    SettingsUpdateRequest,
    SettingsUpdateResponse,
    UserListResponse,
    UserProfile,
    UserResponse,
    UserStatsBody,
    UserStatsResponse,
    UserUpdateResponse,
)
from classgate.logging import get_logger
from classgate.service.audit import RequestMeta
from classgate.service.errors import (
    AuthenticationError,
    LockedError,
    RateLimitedError,
    ValidationError,
)
from classgate.service.permissions import Permission
from classgate.service.runtime import check_rate_limit, get_runtime
from classgate.storage.models import (
    Account,
    AccountQuery,
    AccountSortField,
    AuditAction,
    AuditFilter,
    AuditStatus,
    Role,
    Severity,
)

logger = get_logger(__name__)

router = APIRouter()

RATE_LIMIT_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key``.

    Raises:
        RateLimitedError: the bucket is empty (429 RATE_LIMITED)
    """
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS
    )
    info = RateLimitInfo(limit, remaining, retry_after)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0], retry_after=retry_after)
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retryAfter": retry_after},
        )
    return info


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        path=request.url.path,
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# dependencies


def _authenticate_guarded(request: Request, authorization: Optional[str]) -> Account:
    runtime = get_runtime()
    try:
        return runtime.auth.authenticate(authorization)
    except (AuthenticationError, LockedError) as exc:
        runtime.guard.record_unauthenticated(exc, _request_meta(request))
        raise


async def get_current_account(
    request: Request, authorization: Optional[str] = Header(None)
) -> Account:
    """Any authenticated principal; a missing or bad session is audited."""
    return _authenticate_guarded(request, authorization)


def require_roles(*roles: Role):
    """Dependency factory: authenticated principal holding one of ``roles``."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Account:
        principal = _authenticate_guarded(request, authorization)
        return get_runtime().guard.require_roles(principal, roles, _request_meta(request))

    return dependency


def require_permission(permission: Permission):
    """Dependency factory: authenticated principal whose role grants ``permission``."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Account:
        principal = _authenticate_guarded(request, authorization)
        return get_runtime().guard.require_permission(
            principal, permission, _request_meta(request)
        )

    return dependency


get_admin_account = require_roles(Role.ADMIN)


# auth


@router.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a student or instructor account and return a session token.

    Raises:
        403: REGISTRATION_DISABLED
        400: USER_EXISTS
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
    )
    account, token = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        role=body.role,
        request=_request_meta(request),
    )
    return AuthResponse(
        message="User registered successfully",
        token=token,
        user=PublicUser.from_account(account),
    )


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: INVALID_CREDENTIALS or ACCOUNT_DEACTIVATED
        423: ACCOUNT_LOCKED
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    account, token = await runtime.auth.login(
        body.email, body.password, request=_request_meta(request)
    )
    return AuthResponse(
        message="Login successful",
        token=token,
        user=PublicUser.from_account(account),
    )


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(request: Request, principal: Account = Depends(get_current_account)):
    get_runtime().auth.logout(principal, request=_request_meta(request))
    return MessageResponse(message="Logout successful")


@router.post("/auth/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    get_runtime().auth.verify_email(body.token, request=_request_meta(request))
    return MessageResponse(message="Email verified successfully")


@router.post("/auth/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Always answers with the same message, registered email or not."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    message = await runtime.auth.forgot_password(body.email, request=_request_meta(request))
    return MessageResponse(message=message)


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    await get_runtime().auth.reset_password(
        body.token, body.password, request=_request_meta(request)
    )
    return MessageResponse(message="Password reset successfully")


@router.post("/auth/change-password", response_model=MessageResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: Account = Depends(get_current_account),
):
    await get_runtime().auth.change_password(
        principal, body.current_password, body.password, request=_request_meta(request)
    )
    return MessageResponse(message="Password changed successfully")


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(principal: Account = Depends(get_current_account)):
    return MeResponse(user=UserProfile.from_account(principal))


# users


def _parse_sort(sort: str) -> tuple[AccountSortField, bool]:
    field, _, direction = sort.partition(":")
    try:
        sort_field = AccountSortField(field)
    except ValueError:
        allowed = ", ".join(f.value for f in AccountSortField)
        raise ValidationError(
            f"Sort field must be one of: {allowed}", error_code="INVALID_SORT"
        )
    return sort_field, direction == "desc"


def _search_users(
    page: int,
    limit: int,
    q: Optional[str],
    role: Optional[Role],
    is_active: Optional[bool],
    sort: str,
) -> UserListResponse:
    sort_field, descending = _parse_sort(sort)
    query = AccountQuery(
        text=q.strip() if q else None,
        role=role,
        is_active=is_active,
        sort_field=sort_field,
        descending=descending,
        offset=(page - 1) * limit,
        limit=limit,
    )
    accounts, total = get_runtime().users.search(query)
    return UserListResponse(
        users=[UserProfile.from_account(a) for a in accounts],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/users", response_model=UserListResponse, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    q: Optional[str] = Query(None, min_length=1, max_length=MAX_SEARCH_LENGTH),
    role: Optional[Role] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    sort: str = Query("createdAt:desc", pattern=SORT_PATTERN),
    principal: Account = Depends(get_admin_account),
):
    return _search_users(page, limit, q, role, is_active, sort)


@router.get("/users/stats/overview", response_model=UserStatsResponse, tags=["users"])
async def user_stats(principal: Account = Depends(get_admin_account)):
    stats = get_runtime().users.stats()
    return UserStatsResponse(
        stats=UserStatsBody(
            total_users=stats.total_users,
            active_users=stats.active_users,
            inactive_users=stats.inactive_users,
            new_users_this_month=stats.new_users_this_month,
            users_by_role=stats.users_by_role,
            recent_users=[PublicUser.from_account(a) for a in stats.recent_users],
        )
    )


@router.put("/users/profile", response_model=UserUpdateResponse, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    principal: Account = Depends(get_current_account),
):
    profile = (
        body.profile.model_dump(by_alias=True, exclude_none=True, mode="json")
        if body.profile
        else None
    )
    preferences = (
        body.preferences.model_dump(by_alias=True, exclude_none=True)
        if body.preferences
        else None
    )
    account = get_runtime().users.update_profile(
        principal,
        first_name=body.first_name,
        last_name=body.last_name,
        profile=profile,
        preferences=preferences,
        request=_request_meta(request),
    )
    return UserUpdateResponse(
        message="Profile updated successfully", user=UserProfile.from_account(account)
    )


@router.get("/users/{user_id}", response_model=UserResponse, tags=["users"])
async def get_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Account = Depends(get_current_account),
):
    runtime = get_runtime()
    runtime.guard.require_ownership(principal, user_id, _request_meta(request))
    return UserResponse(user=UserProfile.from_account(runtime.users.get(user_id)))


@router.put("/users/{user_id}", response_model=UserUpdateResponse, tags=["users"])
async def admin_update_user(
    body: AdminUserUpdateRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Account = Depends(get_admin_account),
):
    account = get_runtime().users.admin_update(
        principal, user_id, body.changes(), request=_request_meta(request)
    )
    return UserUpdateResponse(
        message="User updated successfully", user=UserProfile.from_account(account)
    )


@router.delete("/users/{user_id}", response_model=MessageResponse, tags=["users"])
async def delete_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Account = Depends(get_admin_account),
):
    get_runtime().users.delete(principal, user_id, request=_request_meta(request))
    return MessageResponse(message="User deleted successfully")


@router.get("/users/{user_id}/activity", response_model=ActivityResponse, tags=["users"])
async def user_activity(
    request: Request,
    user_id: str = Path(..., max_length=64),
    limit: int = Query(50, ge=1, le=100),
    cursor: Optional[str] = Query(None, max_length=512),
    principal: Account = Depends(get_current_account),
):
    runtime = get_runtime()
    runtime.guard.require_ownership(principal, user_id, _request_meta(request))
    events, next_cursor = runtime.users.activity(user_id, limit=limit, cursor=cursor)
    return ActivityResponse(
        activity=[AuditEventOut.from_event(e) for e in events], next_cursor=next_cursor
    )


# admin


@router.get("/admin/dashboard", response_model=DashboardResponse, tags=["admin"])
async def admin_dashboard(principal: Account = Depends(get_admin_account)):
    stats = get_runtime().admin.dashboard()
    return DashboardResponse(
        stats=DashboardBody(
            users=DashboardUsers(
                total=stats.total,
                active=stats.active,
                inactive=stats.inactive,
                new_today=stats.new_today,
                new_this_week=stats.new_this_week,
                new_this_month=stats.new_this_month,
                by_role=stats.by_role,
            ),
            recent_activity=[AuditEventOut.from_event(e) for e in stats.recent_activity],
        )
    )


@router.get("/admin/analytics", response_model=AnalyticsResponse, tags=["admin"])
async def admin_analytics(
    days: int = Query(30, ge=1, le=365),
    principal: Account = Depends(get_admin_account),
):
    analytics = get_runtime().admin.analytics(days)
    return AnalyticsResponse(
        analytics=AnalyticsBody(
            period=f"{analytics.days} days",
            user_registrations=[
                DailyCount(date=day, count=count) for day, count in analytics.registrations
            ],
            activity_by_action=[
                ActionCount(action=action, count=count)
                for action, count in analytics.activity_by_action
            ],
            top_active_users=[
                ActiveUser(user=PublicUser.from_account(account), activity_count=count)
                for account, count in analytics.top_active_users
            ],
        )
    )


@router.get("/admin/audit-logs", response_model=AuditLogResponse, tags=["admin"])
async def admin_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    action: Optional[AuditAction] = Query(None),
    severity: Optional[Severity] = Query(None),
    status: Optional[AuditStatus] = Query(None),
    resource: Optional[str] = Query(None, max_length=64),
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    principal: Account = Depends(require_permission(Permission.AUDIT_READ)),
):
    filters = AuditFilter(
        action=action,
        resource=resource,
        severity=severity,
        status=status,
        user_id=user_id,
        start=_as_utc(start_date),
        end=_as_utc(end_date),
    )
    events, total = get_runtime().admin.audit_logs(filters, page=page, limit=limit)
    return AuditLogResponse(
        logs=[AuditEventOut.from_event(e) for e in events],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/admin/users", response_model=UserListResponse, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    q: Optional[str] = Query(None, min_length=1, max_length=MAX_SEARCH_LENGTH),
    role: Optional[Role] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    sort: str = Query("createdAt:desc", pattern=SORT_PATTERN),
    principal: Account = Depends(get_admin_account),
):
    return _search_users(page, limit, q, role, is_active, sort)


@router.get("/admin/settings", response_model=SettingsResponse, tags=["admin"])
async def admin_get_settings(principal: Account = Depends(get_admin_account)):
    return SettingsResponse(settings=get_runtime().admin.get_settings())


@router.put("/admin/settings", response_model=SettingsUpdateResponse, tags=["admin"])
async def admin_update_settings(
    body: SettingsUpdateRequest,
    request: Request,
    principal: Account = Depends(require_permission(Permission.SYSTEM_CONFIGURE)),
):
    changes = body.changes()
    if not changes:
        raise ValidationError("No settings provided", error_code="NO_SETTINGS")
    settings = get_runtime().admin.update_settings(
        principal, changes, request=_request_meta(request)
    )
    return SettingsUpdateResponse(message="Settings updated successfully", settings=settings)


@router.get("/admin/health", response_model=HealthResponse, tags=["admin"])
async def admin_health(principal: Account = Depends(get_admin_account)):
    health = await asyncio.to_thread(get_runtime().admin.health)
    return HealthResponse(health=health)


@router.get("/admin/export/{export_type}", response_model=ExportResponse, tags=["admin"])
async def admin_export(
    request: Request,
    export_type: str = Path(..., max_length=32),
    principal: Account = Depends(require_permission(Permission.DATA_EXPORT)),
):
    result = get_runtime().admin.export(principal, export_type, request=_request_meta(request))
    if result.export_type == "users":
        records = [
            UserProfile.from_account(a).model_dump(by_alias=True, mode="json")
            for a in result.records
        ]
    else:
        records = [
            AuditEventOut.from_event(e).model_dump(by_alias=True, mode="json")
            for e in result.records
        ]
    return ExportResponse(type=result.export_type, record_count=result.record_count, records=records)
