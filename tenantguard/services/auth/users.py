from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode
import logging

from tenantguard.core.clock import utc_now
from tenantguard.core.config import Settings
from tenantguard.core.errors import ConflictError, NotFoundError, UnauthenticatedError, ValidationError
from tenantguard.domain.entities import PasswordResetToken, User
from tenantguard.persistence.versioned import VersionedStore
from tenantguard.services.audit import AuditLogger, RequestContext
from tenantguard.services.auth.hashing import CredentialHasher
from tenantguard.services.auth.sessions import SessionManager
from tenantguard.services.mail import MailSender


logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    normalized = email.strip().lower()
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError("Invalid email address", code="INVALID_EMAIL")
    return normalized


@dataclass(frozen=True)
class LoginResult:
    user: User
    session_id: str
    access_token: str
    expires_at: datetime


class UserDirectory:
    """Local user accounts: signup, login with lockout, and password flows.

    Users are never hard-deleted; a soft-deleted user is invisible to every
    lookup here.
    """

    def __init__(
        self,
        *,
        store: VersionedStore,
        hasher: CredentialHasher,
        sessions: SessionManager,
        audit: AuditLogger,
        mail: MailSender,
        settings: Settings,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._sessions = sessions
        self._audit = audit
        self._mail = mail
        self._settings = settings

    def _check_password_rules(self, password: str) -> None:
        if len(password) < self._settings.password_min_length:
            raise ValidationError(
                f"Password must be at least {self._settings.password_min_length} characters",
                code="PASSWORD_TOO_SHORT",
            )
        if len(password) > self._settings.password_max_length:
            raise ValidationError(
                f"Password must be at most {self._settings.password_max_length} characters",
                code="PASSWORD_TOO_LONG",
            )

    async def find_by_id(self, user_id: str) -> User | None:
        user = await self._store.resolve_latest(User, user_id)
        if user is None or user.deleted_at is not None:
            return None
        return user

    async def find_by_email(self, email: str) -> User | None:
        users = await self._store.resolve_latest_many(User, email=email.strip().lower(), deleted_at=None)
        if not users:
            return None
        return max(users, key=lambda user: user.created_at)

    async def _require_user(self, user_id: str) -> User:
        user = await self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    async def create_user(
        self,
        email: str,
        password: str | None,
        name: str,
        *,
        is_super_admin: bool = False,
        context: RequestContext | None = None,
    ) -> User:
        email = normalize_email(email)
        if password is not None:
            self._check_password_rules(password)
        if await self.find_by_email(email) is not None:
            raise ConflictError("Email already exists", code="EMAIL_EXISTS")
        now = utc_now()
        user = await self._store.put_version(
            User(
                email=email,
                name=name.strip(),
                password_hash=self._hasher.hash_password(password) if password is not None else None,
                is_super_admin=is_super_admin,
                password_changed_at=now if password is not None else None,
                created_at=now,
            )
        )
        logger.info("user_created user_id=%s", user.id)
        await self._audit.log(
            actor_id=user.id,
            action="user.created",
            target_type="user",
            target_id=user.id,
            context=context,
        )
        return user

    async def update_profile(self, user_id: str, *, name: str | None = None, email: str | None = None) -> User:
        user = await self._require_user(user_id)
        changes: dict[str, str] = {}
        if name is not None:
            changes["name"] = name.strip()
        if email is not None:
            email = normalize_email(email)
            if email != user.email:
                if await self.find_by_email(email) is not None:
                    raise ConflictError("Email already exists", code="EMAIL_EXISTS")
                changes["email"] = email
        if not changes:
            return user
        return await self._store.put_version(user.evolve(**changes))

    def _locked(self, user: User, now: datetime) -> bool:
        return user.locked_until is not None and user.locked_until > now

    async def is_locked(self, email: str) -> bool:
        user = await self.find_by_email(email)
        return user is not None and self._locked(user, utc_now())

    async def record_login(self, user: User, *, rehash_password: str | None = None) -> User:
        changes: dict[str, object] = {
            "last_login_at": utc_now(),
            "failed_login_attempts": 0,
            "locked_until": None,
        }
        if rehash_password is not None:
            changes["password_hash"] = self._hasher.hash_password(rehash_password)
        return await self._store.put_version(user.evolve(**changes))

    async def record_failed_login(self, user: User) -> User:
        attempts = user.failed_login_attempts + 1
        locked_until = None
        if attempts >= self._settings.login_max_failed_attempts:
            locked_until = utc_now() + timedelta(minutes=self._settings.login_lockout_minutes)
            logger.warning("user_locked user_id=%s attempts=%s", user.id, attempts)
        return await self._store.put_version(
            user.evolve(failed_login_attempts=attempts, locked_until=locked_until)
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        context: RequestContext | None = None,
    ) -> LoginResult:
        context = context or RequestContext()
        user = await self.find_by_email(email)
        if user is None:
            raise UnauthenticatedError("Invalid credentials", code="INVALID_CREDENTIALS")
        now = utc_now()
        if self._locked(user, now):
            raise UnauthenticatedError(
                "Account is temporarily locked. Try again later",
                code="ACCOUNT_LOCKED",
            )
        if not self._hasher.verify_password(password, user.password_hash):
            await self.record_failed_login(user)
            await self._audit.log(
                actor_id=user.id,
                action="user.login_failed",
                target_type="user",
                target_id=user.id,
                context=context,
            )
            raise UnauthenticatedError("Invalid credentials", code="INVALID_CREDENTIALS")
        if user.status != "active":
            raise UnauthenticatedError("Account is not active", code="ACCOUNT_INACTIVE")

        rehash = password if self._hasher.password_needs_rehash(user.password_hash or "") else None
        user = await self.record_login(user, rehash_password=rehash)
        session_id, access_token = await self._sessions.create_session(
            user.id,
            email=user.email,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            context=context,
        )
        logger.info("user_logged_in user_id=%s session_id=%s", user.id, session_id)
        return LoginResult(
            user=user,
            session_id=session_id,
            access_token=access_token,
            expires_at=now + timedelta(days=self._settings.session_ttl_days),
        )

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        context: RequestContext | None = None,
    ) -> User:
        user = await self.find_by_id(user_id)
        if user is None or not user.password_hash:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        if not self._hasher.verify_password(current_password, user.password_hash):
            raise UnauthenticatedError("Current password is incorrect", code="INVALID_PASSWORD")
        if current_password == new_password:
            raise ValidationError(
                "New password must be different from current password",
                code="PASSWORD_UNCHANGED",
            )
        self._check_password_rules(new_password)
        updated = await self._store.put_version(
            user.evolve(
                password_hash=self._hasher.hash_password(new_password),
                password_changed_at=utc_now(),
            )
        )
        await self._audit.log(
            actor_id=user_id,
            action="password.changed",
            target_type="user",
            target_id=user_id,
            metadata={"method": "change"},
            context=context,
        )
        return updated

    async def delete_user(
        self,
        user_id: str,
        deleted_by: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        user = await self._require_user(user_id)
        await self._store.put_version(user.evolve(deleted_at=utc_now(), deleted_by=deleted_by))
        await self._sessions.revoke_all(user_id, actor_id=deleted_by, context=context)
        await self._audit.log(
            actor_id=deleted_by,
            action="user.deleted",
            target_type="user",
            target_id=user_id,
            context=context,
        )

    async def request_password_reset(
        self,
        email: str,
        *,
        workspace_id: str | None = None,
        context: RequestContext | None = None,
    ) -> None:
        # Silent on every rejection so the response never reveals which emails exist.
        user = await self.find_by_email(email)
        now = utc_now()
        if user is None or user.status != "active" or self._locked(user, now):
            logger.info("password_reset_skipped reason=unknown_or_inactive")
            return
        tokens = await self._store.resolve_latest_many(PasswordResetToken, user_id=user.id)
        recent = [token for token in tokens if token.created_at > now - timedelta(hours=1)]
        if len(recent) >= self._settings.password_reset_max_per_hour:
            logger.warning("password_reset_rate_limited user_id=%s", user.id)
            return
        # Older links stop working once a new one is issued.
        for token in tokens:
            if token.status == "pending":
                await self._store.put_version(token.evolve(status="expired"))

        raw_token, token_hash = self._hasher.generate_token()
        reset = await self._store.put_version(
            PasswordResetToken(
                user_id=user.id,
                token_hash=token_hash,
                expires_at=now + timedelta(minutes=self._settings.password_reset_ttl_minutes),
            )
        )
        reset_url = f"{self._settings.app_url.rstrip('/')}/reset-password?{urlencode({'token': raw_token})}"
        await self._mail.send_password_reset(
            workspace_id,
            user.email,
            {"user_name": user.name, "reset_url": reset_url},
        )
        await self._audit.log(
            actor_id=user.id,
            action="password.reset_requested",
            workspace_id=workspace_id,
            target_type="user",
            target_id=user.id,
            metadata={"token_id": reset.id},
            context=context,
        )

    async def reset_password(
        self,
        raw_token: str,
        new_password: str,
        *,
        context: RequestContext | None = None,
    ) -> User:
        self._check_password_rules(new_password)
        tokens = await self._store.resolve_latest_many(
            PasswordResetToken,
            token_hash=self._hasher.hash_token(raw_token),
        )
        if not tokens:
            raise ValidationError("Invalid reset token", code="RESET_TOKEN_INVALID")
        token = max(tokens, key=lambda row: row.updated_at)
        if token.status == "used":
            raise ValidationError("Reset token has already been used", code="RESET_TOKEN_USED")
        if token.status == "expired" or token.expires_at <= utc_now():
            if token.status == "pending":
                await self._store.put_version(token.evolve(status="expired"))
            raise ValidationError("Reset token has expired", code="RESET_TOKEN_EXPIRED")
        user = await self._require_user(token.user_id)

        # Burn the token before anything else so it cannot be replayed.
        await self._store.put_version(token.evolve(status="used"))
        updated = await self._store.put_version(
            user.evolve(
                password_hash=self._hasher.hash_password(new_password),
                password_changed_at=utc_now(),
                failed_login_attempts=0,
                locked_until=None,
            )
        )
        revoked = await self._sessions.revoke_all(user.id, context=context)
        await self._audit.log(
            actor_id=user.id,
            action="password.changed",
            target_type="user",
            target_id=user.id,
            metadata={"method": "reset", "sessions_revoked": revoked},
            context=context,
        )
        return updated
