from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from classgate.logging import get_logger

if TYPE_CHECKING:
    from classgate.config import Settings

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

Rendered = Tuple[str, str]


def _welcome(data: Dict[str, Any]) -> Rendered:
    return (
        "Welcome to Classgate - verify your email",
        f"Hi {data.get('name', '')},\n\n"
        "Your account is ready. Confirm your email address here:\n\n"
        f"{data.get('verificationUrl', '')}\n",
    )


def _password_reset(data: Dict[str, Any]) -> Rendered:
    return (
        "Reset your Classgate password",
        f"Hi {data.get('name', '')},\n\n"
        "Use the link below to choose a new password. It expires in one hour.\n\n"
        f"{data.get('resetUrl', '')}\n\n"
        "If you did not ask for this, ignore this message.\n",
    )


def _password_changed(data: Dict[str, Any]) -> Rendered:
    return (
        "Your Classgate password was changed",
        f"Hi {data.get('name', '')},\n\n"
        "The password on your account was just changed. If this was not you, "
        "reset it immediately and contact an administrator.\n",
    )


# Plain-text stand-ins; designed templates live with the mail provider
TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Rendered]] = {
    "welcome": _welcome,
    "passwordReset": _password_reset,
    "passwordChanged": _password_changed,
}


def mask_address(address: str) -> str:
    local, sep, domain = address.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Renders the account templates and hands them to an SMTP relay.

    With no relay configured, messages are logged instead of sent. ``send``
    reports failure through its return value and never raises.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Classgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, template: str, data: Dict[str, Any]) -> bool:
        """Render ``template`` with ``data`` and deliver it to ``to``."""
        render = TEMPLATES.get(template)
        if render is None:
            logger.error("email_unknown_template", template=template)
            return False
        subject, body = render(data)

        if not self.is_configured:
            logger.info(
                "email_not_sent_unconfigured",
                recipient=mask_address(to),
                template=template,
                preview=body[:200],
            )
            return True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to
        message.set_content(body)

        try:
            self._deliver(message)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers refused connections, DNS failures and timeouts
            logger.error(
                "email_delivery_failed",
                recipient=mask_address(to),
                template=template,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False
        logger.info("email_sent", recipient=mask_address(to), template=template)
        return True

    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            connection = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            connection = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with connection as relay:
            if self.smtp_use_tls:
                relay.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                relay.login(self.smtp_user, self.smtp_password)
            relay.send_message(message)
