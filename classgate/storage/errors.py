from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store rejected a write that would break a uniqueness rule.

    ``code`` reaches the client unchanged, e.g. ``USER_EXISTS`` when two
    accounts would share an email.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        code: str = "CONSTRAINT_VIOLATION",
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail or {}
