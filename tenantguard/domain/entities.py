from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, ClassVar, Literal, Mapping, TypeVar, get_args
from uuid import uuid4

from tenantguard.core.clock import next_version_timestamp, utc_now


Role = Literal["owner", "admin", "editor", "viewer"]
ApiScope = Literal[
    "events.track",
    "analytics.view",
    "analytics.export",
    "workspace.read",
    "filters.manage",
    "annotations.manage",
]
UserStatus = Literal["pending", "active", "disabled"]
ApiKeyStatus = Literal["active", "revoked", "expired"]
ResetTokenStatus = Literal["pending", "used", "expired"]

ROLES: tuple[str, ...] = get_args(Role)
API_SCOPES: tuple[str, ...] = get_args(ApiScope)

API_SCOPE_DESCRIPTIONS: Mapping[str, str] = {
    "events.track": "Send session and event data via SDK",
    "analytics.view": "Query analytics data",
    "analytics.export": "Export analytics data",
    "workspace.read": "Read workspace configuration",
    "filters.manage": "Create and manage filters",
    "annotations.manage": "Create and manage annotations",
}


def new_id() -> str:
    return uuid4().hex


E = TypeVar("E", bound="VersionedEntity")


@dataclass(frozen=True, kw_only=True)
class VersionedEntity:
    """Immutable value of one version of a logical record.

    ``id`` is stable across versions; ``updated_at`` orders them. A change is
    never applied in place: ``evolve`` returns the next version, which the
    caller appends to the store.
    """

    collection: ClassVar[str] = ""

    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=next_version_timestamp)

    def evolve(self: E, **changes: Any) -> E:
        changes.setdefault("updated_at", next_version_timestamp())
        return replace(self, **changes)

    def to_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls: type[E], row: Mapping[str, Any]) -> E:
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in row.items() if key in names})

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass(frozen=True, kw_only=True)
class User(VersionedEntity):
    collection: ClassVar[str] = "users"

    email: str
    name: str = ""
    # Externally provisioned admins may have no local password.
    password_hash: str | None = None
    status: UserStatus = "active"
    is_super_admin: bool = False
    last_login_at: datetime | None = None
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    password_changed_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, kw_only=True)
class Session(VersionedEntity):
    collection: ClassVar[str] = "sessions"

    user_id: str
    token_hash: str
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    revoked_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, kw_only=True)
class ApiKey(VersionedEntity):
    collection: ClassVar[str] = "api_keys"

    key_hash: str
    key_prefix: str
    user_id: str
    # Only transiently unbound; an unbound key never authenticates.
    workspace_id: str | None
    name: str
    created_by: str
    scopes: tuple[str, ...]
    description: str = ""
    status: ApiKeyStatus = "active"
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    failed_attempts_count: int = 0
    last_failed_attempt_at: datetime | None = None
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["scopes"] = list(self.scopes)
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ApiKey:
        values = dict(row)
        values["scopes"] = tuple(values.get("scopes") or ())
        return super().from_row(values)

    def public_view(self) -> dict[str, Any]:
        # The hash never leaves the service layer.
        row = self.to_row()
        row.pop("key_hash", None)
        return row


@dataclass(frozen=True, kw_only=True)
class WorkspaceMembership(VersionedEntity):
    collection: ClassVar[str] = "workspace_memberships"

    workspace_id: str
    user_id: str
    role: Role
    invited_by: str | None = None
    joined_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, kw_only=True)
class PasswordResetToken(VersionedEntity):
    collection: ClassVar[str] = "password_reset_tokens"

    user_id: str
    token_hash: str
    expires_at: datetime
    status: ResetTokenStatus = "pending"
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, kw_only=True)
class AuditEvent(VersionedEntity):
    # Audit rows are written once and never evolved.
    collection: ClassVar[str] = "audit_events"

    action: str
    actor_id: str | None
    workspace_id: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


ENTITY_TYPES: tuple[type[VersionedEntity], ...] = (
    User,
    Session,
    ApiKey,
    WorkspaceMembership,
    PasswordResetToken,
    AuditEvent,
)
