from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from classgate.logging import get_logger
from classgate.service.audit import AuditRecorder, RequestMeta
from classgate.service.errors import ForbiddenError, ServiceError
from classgate.service.permissions import Permission, has_permission
from classgate.storage.models import Account, AuditAction, AuditStatus, Role, Severity

logger = get_logger(__name__)


class AuthorizationGuard:
    """Role, permission and ownership checks.

    Each denial appends one UNAUTHORIZED_ACCESS / HIGH event before the
    ForbiddenError is raised.
    """

    def __init__(self, audit: AuditRecorder) -> None:
        self.audit = audit

    def _deny(
        self,
        principal: Optional[Account],
        request: Optional[RequestMeta],
        details: Dict[str, Any],
    ) -> None:
        meta = request or RequestMeta()
        self.audit.record(
            AuditAction.UNAUTHORIZED_ACCESS,
            actor_id=principal.id if principal else None,
            resource="Endpoint",
            resource_id=meta.path,
            details={
                "endpoint": meta.path,
                "method": meta.method,
                "userRole": principal.role.value if principal else None,
                **details,
            },
            severity=Severity.HIGH,
            status=AuditStatus.FAILURE,
            request=meta,
        )
        logger.warning(
            "access_denied",
            user_id=principal.id if principal else None,
            path=meta.path,
            **{k: v for k, v in details.items() if k != "reason"},
        )

    def require_roles(
        self,
        principal: Account,
        roles: Iterable[Role],
        request: Optional[RequestMeta] = None,
    ) -> Account:
        allowed = [Role(r) for r in roles]
        if principal.role in allowed:
            return principal
        required = [r.value for r in allowed]
        self._deny(principal, request, {"requiredRoles": required})
        raise ForbiddenError(
            "Insufficient permissions",
            error_code="INSUFFICIENT_PERMISSIONS",
            detail={"required": required, "current": principal.role.value},
        )

    def require_permission(
        self,
        principal: Account,
        permission: Permission,
        request: Optional[RequestMeta] = None,
    ) -> Account:
        if has_permission(principal.role, permission):
            return principal
        self._deny(principal, request, {"requiredPermission": Permission(permission).value})
        raise ForbiddenError(
            "Insufficient permissions",
            error_code="INSUFFICIENT_PERMISSIONS",
            detail={"required": Permission(permission).value, "current": principal.role.value},
        )

    def require_ownership(
        self,
        principal: Account,
        owner_id: str,
        request: Optional[RequestMeta] = None,
        *,
        bypass_roles: Iterable[Role] = (Role.ADMIN,),
    ) -> Account:
        if principal.role in {Role(r) for r in bypass_roles}:
            return principal
        if principal.id == owner_id:
            return principal
        self._deny(principal, request, {"resourceOwner": owner_id})
        raise ForbiddenError(
            "Access denied. You can only access your own resources.",
            error_code="NOT_RESOURCE_OWNER",
        )

    def record_unauthenticated(
        self, error: ServiceError, request: Optional[RequestMeta] = None
    ) -> None:
        """Audit a guarded route reached without a usable session."""
        self._deny(None, request, {"reason": error.error_code})
