from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("classgate_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Log fields that may carry credentials or contact details
_MASKED_LOG_FIELDS = ("password", "secret", "token", "authorization", "email", "phone")

# Keys whose values never leave the process (audit details, admin responses)
_SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "apikey",
    "authorization",
    "credentials",
    "privatekey",
    "accesskey",
)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id used to tie log lines to one HTTP request."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _bind_request_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event.setdefault("request_id", request_id)
    return event


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _mask_account_fields(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    for field, value in event.items():
        if not isinstance(value, str):
            continue
        if any(marker in field.lower() for marker in _MASKED_LOG_FIELDS):
            event[field] = _mask(value)
    return event


def _renderer(console: bool) -> Iterable[Any]:
    if console:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``console`` switches to the coloured dev renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _mask_account_fields,
        structlog.processors.StackInfoRenderer(),
        *_renderer(console),
    ]
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=os.getenv("LOG_JSON", "true").lower() not in _TRUTHY
    or os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _is_sensitive_key(key: Any) -> bool:
    # suffix match: smtpPassword is secret, passwordMinLength is not
    compact = "".join(ch for ch in str(key).lower() if ch not in "-_ ")
    return compact.endswith(_SENSITIVE_KEYS)


def redact_sensitive(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Return a copy of ``data`` with values under sensitive keys replaced.

    Applied to audit details before they are persisted and to system
    settings before they are returned to admins. Nesting deeper than
    ``max_depth`` collapses to a marker string.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if _is_sensitive_key(key)
            else redact_sensitive(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
