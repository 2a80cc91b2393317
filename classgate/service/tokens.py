from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional

from classgate.config import Settings
from classgate.logging import get_logger
from classgate.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)


class TokenService:
    """Issue and verify HS256 session tokens bound to an account id.

    Payload is ``{"userId", "iat", "exp", "iss"}``. Tokens are stateless; the
    caller re-checks account status on each request.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock_skew_leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._leeway = clock_skew_leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        account_id: str,
        *,
        ttl: Optional[timedelta] = None,
        now: Optional[float] = None,
    ) -> str:
        issued_at = int(now if now is not None else time.time())
        lifetime = ttl if ttl is not None else self.settings.token_ttl
        payload: dict[str, Any] = {
            "userId": account_id,
            "iat": issued_at,
            "exp": issued_at + int(lifetime.total_seconds()),
            "iss": self.settings.jwt_issuer,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, now: Optional[float] = None) -> str:
        """Return the account id carried by ``token``.

        Raises:
            TokenInvalidError: malformed, bad signature, wrong algorithm or issuer
            TokenExpiredError: valid signature but ``exp`` has passed
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("Invalid token")

        # Pin the algorithm; never trust the header to pick one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("Invalid token")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("Invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Invalid token")
        if not isinstance(payload, dict):
            raise TokenInvalidError("Invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("Invalid token")
        account_id = payload.get("userId")
        if not isinstance(account_id, str) or not account_id:
            raise TokenInvalidError("Invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("Invalid token")
        current = now if now is not None else time.time()
        if exp_ts <= current - self._leeway.total_seconds():
            raise TokenExpiredError("Token expired")
        return account_id
