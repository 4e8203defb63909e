from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


@dataclass(frozen=True)
class SessionIdentity:
    # A logged-in user; workspace rights come from memberships, not the token.
    user_id: str
    session_id: str
    email: str | None = None
    kind: Literal["session"] = "session"


@dataclass(frozen=True)
class ApiKeyIdentity:
    # An API key acts only inside its bound workspace and only through its scopes.
    key_id: str
    user_id: str
    workspace_id: str
    scopes: frozenset[str]
    kind: Literal["api-key"] = "api-key"


Identity = Union[SessionIdentity, ApiKeyIdentity]


@dataclass(frozen=True)
class AuthDecision:
    allowed: bool
    reason: str | None = None
    code: str | None = None

    @classmethod
    def allow(cls) -> AuthDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, *, code: str = "AUTH_FORBIDDEN") -> AuthDecision:
        return cls(allowed=False, reason=reason, code=code)
