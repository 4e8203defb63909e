from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from tenantguard.core.clock import utc_now
from tenantguard.core.config import Settings
from tenantguard.core.errors import UnauthenticatedError
from tenantguard.services.auth.tokens import AccessTokenCodec


def test_issue_and_decode_round_trip(settings: Settings) -> None:
    codec = AccessTokenCodec(settings)
    expires_at = utc_now() + timedelta(hours=1)
    token = codec.issue(user_id="u-1", session_id="s-1", email="a@example.com", expires_at=expires_at)
    claims = codec.decode(token)
    assert (claims.user_id, claims.session_id, claims.email) == ("u-1", "s-1", "a@example.com")
    assert abs((claims.expires_at - expires_at).total_seconds()) < 1


def test_tokens_for_same_session_are_unique(settings: Settings) -> None:
    codec = AccessTokenCodec(settings)
    expires_at = utc_now() + timedelta(hours=1)
    first = codec.issue(user_id="u-1", session_id="s-1", email=None, expires_at=expires_at)
    second = codec.issue(user_id="u-1", session_id="s-1", email=None, expires_at=expires_at)
    assert first != second


def test_expired_token_is_rejected(settings: Settings) -> None:
    codec = AccessTokenCodec(settings)
    token = codec.issue(user_id="u-1", session_id="s-1", email=None, expires_at=utc_now() - timedelta(minutes=5))
    with pytest.raises(UnauthenticatedError) as exc_info:
        codec.decode(token)
    assert exc_info.value.code == "SESSION_EXPIRED"


def test_foreign_signature_is_rejected(settings: Settings) -> None:
    forged = jwt.encode(
        {"sub": "u-1", "sid": "s-1", "iss": settings.session_jwt_issuer, "exp": utc_now() + timedelta(hours=1)},
        "another-secret-that-is-long-enough-for-hs256",
        algorithm="HS256",
    )
    with pytest.raises(UnauthenticatedError) as exc_info:
        AccessTokenCodec(settings).decode(forged)
    assert exc_info.value.code == "SESSION_INVALID"


def test_missing_session_claim_is_rejected(settings: Settings) -> None:
    token = jwt.encode(
        {"sub": "u-1", "iss": settings.session_jwt_issuer, "exp": utc_now() + timedelta(hours=1)},
        settings.session_jwt_secret,
        algorithm=settings.session_jwt_algorithm,
    )
    with pytest.raises(UnauthenticatedError) as exc_info:
        AccessTokenCodec(settings).decode(token)
    assert exc_info.value.code == "SESSION_INVALID"


def test_garbage_token_is_rejected(settings: Settings) -> None:
    with pytest.raises(UnauthenticatedError):
        AccessTokenCodec(settings).decode("not-a-jwt")
