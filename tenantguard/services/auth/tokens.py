from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

import jwt

from tenantguard.core.config import Settings
from tenantguard.core.errors import UnauthenticatedError


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    session_id: str
    email: str | None
    expires_at: datetime


class AccessTokenCodec:
    """Signs and verifies session access tokens.

    The signature only proves the token was issued here; whether the session
    is still live is decided by the session store on every request.
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.session_jwt_secret
        self._algorithm = settings.session_jwt_algorithm
        self._issuer = settings.session_jwt_issuer

    def issue(self, *, user_id: str, session_id: str, email: str | None, expires_at: datetime) -> str:
        claims = {
            "sub": user_id,
            "sid": session_id,
            "email": email,
            # Unique per token so two sessions never share a token hash.
            "jti": uuid4().hex,
            "iss": self._issuer,
            "exp": expires_at,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> AccessTokenClaims:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "sid", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise UnauthenticatedError("Session token expired", code="SESSION_EXPIRED") from exc
        except jwt.InvalidTokenError as exc:
            raise UnauthenticatedError("Invalid session token", code="SESSION_INVALID") from exc
        return AccessTokenClaims(
            user_id=str(claims["sub"]),
            session_id=str(claims["sid"]),
            email=claims.get("email"),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )
