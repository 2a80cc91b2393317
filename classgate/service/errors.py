from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Failure raised by a service and rendered as ``{message, code, **detail}``.

    Subclasses fix the HTTP status and a default code; call sites usually
    narrow the code (``USER_EXISTS``, ``INVALID_CREDENTIALS``,
    ``CANNOT_DEACTIVATE_SELF``...) since clients branch on it.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or type(self).status_code
        self.error_code = error_code or type(self).error_code
        self.detail = dict(detail or {})


class ValidationError(ServiceError):
    pass


class AuthenticationError(ServiceError):
    """No usable identity on the request."""

    status_code = 401
    error_code = "UNAUTHORIZED"


class TokenInvalidError(AuthenticationError):
    """Bad signature, wrong issuer or unparseable session token."""

    error_code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class ForbiddenError(ServiceError):
    """Identity is known but its role lacks the permission."""

    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    # duplicates answer 400, matching the client contract
    status_code = 400
    error_code = "CONFLICT"


class LockedError(ServiceError):
    """Too many consecutive failed logins; ``detail`` carries ``lockUntil``."""

    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class RateLimitedError(ServiceError):
    """Token bucket empty; ``detail`` carries ``retryAfter`` seconds."""

    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_ERROR"
