from __future__ import annotations

import asyncio
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from classgate.config import Settings
from classgate.logging import get_logger
from classgate.service.audit import AuditRecorder, RequestMeta
from classgate.service.email import EmailService
from classgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    LockedError,
    ServerError,
    TokenInvalidError,
    ValidationError,
)
from classgate.service.system_settings import SystemSettingsService
from classgate.service.tokens import TokenService
from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import (
    Account,
    AuditAction,
    AuditStatus,
    Role,
    Severity,
    utcnow,
)

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, we have sent a password reset link."
)
SELF_REGISTER_ROLES = frozenset({Role.STUDENT, Role.INSTRUCTOR})


class AccountStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def claim_verification_token(self, token: str) -> Optional[Account]: ...

    def claim_reset_token(self, token: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def register_failed_login(
        self, account_id: str, *, max_attempts: int, lockout: timedelta
    ) -> Optional[Account]: ...

    def record_login_success(self, account_id: str) -> Optional[Account]: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...


def _locked_error(account: Account) -> LockedError:
    return LockedError(
        "Account temporarily locked due to too many failed login attempts",
        detail={"lockUntil": account.lock_until.isoformat() if account.lock_until else None},
    )


class AuthService:
    """Registration, login with lockout, password lifecycle and bearer auth.

    Every outcome that matters for security (success or failure) is written
    to the audit trail before the method returns or raises.
    """

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        audit: AuditRecorder,
        email: EmailService,
        system_settings: SystemSettingsService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.email = email
        self.system_settings = system_settings
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, account_id: str, password: str) -> bool:
        """Verify an account's password against the stored hash."""
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=account_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def save_password(self, account_id: str, password: str) -> None:
        """Hash and save a new password for an account."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(account_id, pwd_hash, algo)

    def check_password_policy(self, password: str) -> None:
        """Apply the admin-configured minimum length on top of the schema rules."""
        minimum = self.system_settings.security_policy().password_min_length
        if len(password) >= minimum:
            return
        message = f"Password must be at least {minimum} characters long"
        raise ValidationError(
            "Validation failed",
            detail={"errors": [{"field": "password", "message": message, "value": "[REDACTED]"}]},
        )

    async def _notify(self, to: str, template: str, data: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self.email.send, to, template, data)

    def _issue(self, account: Account) -> str:
        return self.tokens.issue(
            account.id, ttl=self.system_settings.security_policy().token_ttl
        )

    # flows
    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.STUDENT,
        request: Optional[RequestMeta] = None,
    ) -> Tuple[Account, str]:
        if not self.system_settings.registration_enabled():
            raise ForbiddenError(
                "Registration is currently disabled", error_code="REGISTRATION_DISABLED"
            )
        role = Role(role)
        if role not in SELF_REGISTER_ROLES:
            raise ValidationError(
                "Role must be student or instructor", error_code="INVALID_ROLE"
            )
        self.check_password_policy(password)
        if self.store.get_account_by_email(email):
            raise ConflictError(
                "User already exists with this email", error_code="USER_EXISTS"
            )
        pwd_hash, algo = self._hash_password(password)
        verification_token = secrets.token_hex(32)
        try:
            account = self.store.create_account(
                email,
                first_name,
                last_name,
                password_hash=pwd_hash,
                password_algo=algo,
                role=role,
                email_verification_token=verification_token,
            )
        except ConstraintViolation:
            raise ConflictError(
                "User already exists with this email", error_code="USER_EXISTS"
            )

        # welcome mail is best effort; registration stands without it
        sent = await self._notify(
            account.email,
            "welcome",
            {
                "name": account.first_name,
                "verificationUrl": f"{self.settings.client_url}/verify-email?token={verification_token}",
            },
        )
        if not sent:
            self.logger.warning("welcome_email_failed", user_id=account.id)

        token = self._issue(account)
        self.audit.record(
            AuditAction.REGISTER,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"email": account.email, "role": account.role.value},
            request=request,
        )
        self.logger.info("account_registered", user_id=account.id, role=account.role.value)
        return account, token

    def _audit_login_failure(
        self,
        account: Optional[Account],
        email: str,
        reason: str,
        request: Optional[RequestMeta],
        **extra: Any,
    ) -> None:
        self.audit.record(
            AuditAction.LOGIN,
            actor_id=account.id if account else None,
            resource="User",
            resource_id=account.id if account else None,
            details={"email": email, "reason": reason, **extra},
            severity=Severity.MEDIUM,
            status=AuditStatus.FAILURE,
            request=request,
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        request: Optional[RequestMeta] = None,
    ) -> Tuple[Account, str]:
        account = self.store.get_account_by_email(email)
        if not account:
            self._audit_login_failure(None, email, "Unknown account", request)
            raise AuthenticationError(
                "Invalid credentials", error_code="INVALID_CREDENTIALS"
            )
        # lock is checked before the password so a locked account leaks nothing
        if account.is_locked():
            self._audit_login_failure(account, email, "Account locked", request)
            raise _locked_error(account)
        if not account.is_active:
            self._audit_login_failure(account, email, "Account deactivated", request)
            raise AuthenticationError(
                "Account is deactivated", error_code="ACCOUNT_DEACTIVATED"
            )
        if not self.verify_password(account.id, password):
            policy = self.system_settings.security_policy()
            updated = self.store.register_failed_login(
                account.id,
                max_attempts=policy.max_login_attempts,
                lockout=policy.lockout_duration,
            ) or account
            locked = updated.is_locked()
            self.logger.warning(
                "login_failed",
                user_id=account.id,
                attempts=updated.failed_login_count,
                locked=locked,
            )
            self._audit_login_failure(
                account,
                email,
                "Invalid password",
                request,
                attempts=updated.failed_login_count,
                locked=locked,
            )
            raise AuthenticationError(
                "Invalid credentials", error_code="INVALID_CREDENTIALS"
            )

        account = self.store.record_login_success(account.id) or account
        token = self._issue(account)
        self.audit.record(
            AuditAction.LOGIN,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"email": account.email},
            request=request,
        )
        return account, token

    def logout(self, account: Account, *, request: Optional[RequestMeta] = None) -> None:
        # tokens are stateless; the client discards its copy
        self.audit.record(
            AuditAction.LOGOUT,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            request=request,
        )

    def verify_email(self, token: str, *, request: Optional[RequestMeta] = None) -> Account:
        if not token:
            raise ValidationError(
                "Verification token is required", error_code="TOKEN_REQUIRED"
            )
        account = self.store.claim_verification_token(token)
        if not account:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise ValidationError("Invalid verification token", error_code="INVALID_TOKEN")
        self.audit.record(
            AuditAction.EMAIL_VERIFY,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            request=request,
        )
        self.logger.info("email_verified", user_id=account.id)
        return account

    async def forgot_password(
        self, email: str, *, request: Optional[RequestMeta] = None
    ) -> str:
        """Issue a reset token and mail it.

        Returns the same message whether or not ``email`` is registered.

        Raises:
            ServerError: EMAIL_SEND_ERROR when the reset mail cannot be sent
        """
        account = self.store.get_account_by_email(email)
        if not account:
            self.logger.info("password_reset_unknown_email")
            return FORGOT_PASSWORD_MESSAGE

        reset_token = secrets.token_hex(32)
        expires = utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.update_account(
            account.id, password_reset_token=reset_token, password_reset_expires=expires
        )
        sent = await self._notify(
            account.email,
            "passwordReset",
            {
                "name": account.first_name,
                "resetUrl": f"{self.settings.client_url}/reset-password?token={reset_token}",
            },
        )
        if not sent:
            self.logger.error("password_reset_email_failed", user_id=account.id)
            raise ServerError(
                "Failed to send password reset email", error_code="EMAIL_SEND_ERROR"
            )
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"email": account.email, "action": "requested"},
            severity=Severity.MEDIUM,
            request=request,
        )
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(
        self, token: str, new_password: str, *, request: Optional[RequestMeta] = None
    ) -> Account:
        self.check_password_policy(new_password)
        account = self.store.claim_reset_token(token) if token else None
        if not account:
            self.logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise ValidationError(
                "Invalid or expired reset token", error_code="INVALID_TOKEN"
            )
        self.save_password(account.id, new_password)
        account = self.store.update_account(
            account.id, failed_login_count=0, lock_until=None
        ) or account
        sent = await self._notify(account.email, "passwordChanged", {"name": account.first_name})
        if not sent:
            self.logger.warning("password_changed_email_failed", user_id=account.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"action": "completed"},
            severity=Severity.MEDIUM,
            request=request,
        )
        self.logger.info("password_reset_completed", user_id=account.id)
        return account

    async def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        *,
        request: Optional[RequestMeta] = None,
    ) -> None:
        if not self.verify_password(account.id, current_password):
            self.audit.record(
                AuditAction.PASSWORD_RESET,
                actor_id=account.id,
                resource="User",
                resource_id=account.id,
                details={"action": "changed", "reason": "Invalid current password"},
                severity=Severity.MEDIUM,
                status=AuditStatus.FAILURE,
                request=request,
            )
            raise ValidationError(
                "Current password is incorrect", error_code="INVALID_CURRENT_PASSWORD"
            )
        self.check_password_policy(new_password)
        self.save_password(account.id, new_password)
        sent = await self._notify(account.email, "passwordChanged", {"name": account.first_name})
        if not sent:
            self.logger.warning("password_changed_email_failed", user_id=account.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            actor_id=account.id,
            resource="User",
            resource_id=account.id,
            details={"action": "changed"},
            severity=Severity.MEDIUM,
            request=request,
        )

    def provision_account(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        role: Role,
        actor_id: Optional[str] = None,
        source: str = "admin",
    ) -> Account:
        """Create a pre-verified account outside self registration (any role)."""
        pwd_hash, algo = self._hash_password(password)
        try:
            account = self.store.create_account(
                email,
                first_name,
                last_name,
                password_hash=pwd_hash,
                password_algo=algo,
                role=role,
                is_email_verified=True,
            )
        except ConstraintViolation:
            raise ConflictError(
                "User already exists with this email", error_code="USER_EXISTS"
            )
        self.audit.record(
            AuditAction.USER_CREATE,
            actor_id=actor_id,
            resource="User",
            resource_id=account.id,
            details={"email": account.email, "role": account.role.value, "source": source},
            severity=Severity.MEDIUM,
        )
        return account

    # bearer auth
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> Account:
        """Resolve ``Authorization: Bearer <token>`` to a usable account.

        Raises:
            AuthenticationError: TOKEN_REQUIRED, INVALID_TOKEN, TOKEN_EXPIRED
                or ACCOUNT_DEACTIVATED
            LockedError: the account is inside a lockout window
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required", error_code="TOKEN_REQUIRED")
        account_id = self.tokens.verify(token)
        account = self.store.get_account(account_id)
        if not account:
            raise TokenInvalidError("Invalid token")
        if not account.is_active:
            raise AuthenticationError(
                "Account is deactivated", error_code="ACCOUNT_DEACTIVATED"
            )
        if account.is_locked():
            raise _locked_error(account)
        return account
