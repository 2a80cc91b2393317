"""Unit tests for session token issue/verify."""

import base64
import json
import time
from datetime import timedelta

import pytest

from classgate.config import Settings
from classgate.service.errors import TokenExpiredError, TokenInvalidError
from classgate.service.tokens import TokenService


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", jwt_expires_in="1h")


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def test_round_trip_returns_account_id(tokens):
    token = tokens.issue("acct-1")
    assert tokens.verify(token) == "acct-1"


def test_payload_carries_user_id_and_issuer(tokens):
    now = time.time()
    token = tokens.issue("acct-1", now=now)
    payload_b64 = token.split(".")[1]
    payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
    assert payload["userId"] == "acct-1"
    assert payload["iss"] == "classgate"
    assert payload["exp"] - payload["iat"] == 3600


def test_expired_token_raises_token_expired(tokens):
    issued = time.time() - 7200
    token = tokens.issue("acct-1", now=issued)
    with pytest.raises(TokenExpiredError) as excinfo:
        tokens.verify(token)
    assert excinfo.value.error_code == "TOKEN_EXPIRED"
    assert excinfo.value.status_code == 401


def test_expiry_honours_clock_skew_leeway(tokens):
    now = time.time()
    token = tokens.issue("acct-1", ttl=timedelta(seconds=10), now=now)
    # 20s past exp is inside the 30s leeway
    assert tokens.verify(token, now=now + 30) == "acct-1"
    with pytest.raises(TokenExpiredError):
        tokens.verify(token, now=now + 45)


def test_tampered_signature_is_invalid(tokens):
    token = tokens.issue("acct-1")
    header, payload, sig = token.split(".")
    forged = f"{header}.{payload}.{sig[:-2]}xx"
    with pytest.raises(TokenInvalidError) as excinfo:
        tokens.verify(forged)
    assert excinfo.value.error_code == "INVALID_TOKEN"


def test_token_signed_with_other_secret_is_invalid(tokens):
    other = TokenService(Settings(jwt_secret="another-secret-key-that-is-long-enough-000"))
    with pytest.raises(TokenInvalidError):
        tokens.verify(other.issue("acct-1"))


def test_alg_none_is_rejected(tokens):
    token = tokens.issue("acct-1")
    _, payload, sig = token.split(".")
    header = _b64({"alg": "none", "typ": "JWT"})
    with pytest.raises(TokenInvalidError):
        tokens.verify(f"{header}.{payload}.{sig}")


def test_wrong_issuer_is_invalid(settings):
    issuer_a = TokenService(settings)
    issuer_b = TokenService(settings.model_copy(update={"jwt_issuer": "someone-else"}))
    with pytest.raises(TokenInvalidError):
        issuer_a.verify(issuer_b.issue("acct-1"))


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "not-a-jwt.at.all"])
def test_malformed_tokens_are_invalid(tokens, garbage):
    with pytest.raises(TokenInvalidError):
        tokens.verify(garbage)
