from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for tenantguard."""

    default_code = "TENANTGUARD_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return self.message


class UnauthenticatedError(TenantGuardError):
    """Missing, invalid, revoked, or expired credential."""

    default_code = "AUTH_UNAUTHORIZED"


class ForbiddenError(TenantGuardError):
    """Authenticated, but the role, scope, or hierarchy does not allow the action."""

    default_code = "AUTH_FORBIDDEN"


class NotFoundError(TenantGuardError):
    """Referenced entity has no resolvable current version."""

    default_code = "NOT_FOUND"


class ConflictError(TenantGuardError):
    """Operation would violate an invariant (last owner, self-modification)."""

    default_code = "CONFLICT"


class ValidationError(TenantGuardError):
    """Input is malformed (unknown role, unknown scope, weak password)."""

    default_code = "BAD_REQUEST"


class TransientError(TenantGuardError):
    """Store timeout or outage; the whole request is safe to retry."""

    default_code = "STORE_UNAVAILABLE"
    retryable = True
