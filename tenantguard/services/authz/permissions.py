from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Literal, Mapping, get_args

from tenantguard.core.errors import ValidationError


Permission = Literal[
    "analytics.view",
    "analytics.export",
    "filters.manage",
    "annotations.manage",
    "integrations.manage",
    "workspace.settings",
    "workspace.smtp",
    "workspace.delete",
    "apiKeys.view",
    "apiKeys.manage",
    "members.invite",
    "members.manage",
    "members.remove",
    "ownership.transfer",
]

PERMISSIONS_LIST: tuple[str, ...] = get_args(Permission)

# Tables are built once at import and exposed read-only.
ROLE_ORDER: Mapping[str, int] = MappingProxyType(
    {
        "owner": 4,
        "admin": 3,
        "editor": 2,
        "viewer": 1,
    }
)

PERMISSIONS: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        "analytics.view": frozenset({"owner", "admin", "editor", "viewer"}),
        "analytics.export": frozenset({"owner", "admin", "editor"}),
        "filters.manage": frozenset({"owner", "admin", "editor"}),
        "annotations.manage": frozenset({"owner", "admin", "editor"}),
        "integrations.manage": frozenset({"owner", "admin"}),
        "workspace.settings": frozenset({"owner", "admin"}),
        "workspace.smtp": frozenset({"owner"}),
        "workspace.delete": frozenset({"owner"}),
        "apiKeys.view": frozenset({"owner", "admin"}),
        "apiKeys.manage": frozenset({"owner", "admin"}),
        "members.invite": frozenset({"owner", "admin"}),
        "members.manage": frozenset({"owner", "admin"}),
        "members.remove": frozenset({"owner", "admin"}),
        "ownership.transfer": frozenset({"owner"}),
    }
)

# None: grantable by anyone allowed to create keys at all.
SCOPE_TO_PERMISSION: Mapping[str, str | None] = MappingProxyType(
    {
        "events.track": None,
        "analytics.view": "analytics.view",
        "analytics.export": "analytics.export",
        "workspace.read": "analytics.view",
        "filters.manage": "filters.manage",
        "annotations.manage": "annotations.manage",
    }
)


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValidationError(f"Unsupported role: {role}", code="INVALID_ROLE")
    return normalized


def normalize_scopes(scopes: Iterable[str]) -> tuple[str, ...]:
    # Deduplicate while keeping request order; reject empty or unknown scopes.
    normalized: list[str] = []
    for scope in scopes:
        if scope not in SCOPE_TO_PERMISSION:
            raise ValidationError(f"Unsupported scope: {scope}", code="INVALID_SCOPE")
        if scope not in normalized:
            normalized.append(scope)
    if not normalized:
        raise ValidationError("At least one scope is required", code="INVALID_SCOPE")
    return tuple(normalized)


def role_rank(role: str) -> int:
    return ROLE_ORDER.get(role, 0)


def has_permission(role: str, permission: str) -> bool:
    return role in PERMISSIONS.get(permission, frozenset())


def can_modify_member(actor_role: str, target_role: str) -> bool:
    # Strictly greater: peers never modify peers, owners included.
    return role_rank(actor_role) > role_rank(target_role)


def scope_requires_permission(scope: str) -> str | None:
    if scope not in SCOPE_TO_PERMISSION:
        raise ValidationError(f"Unsupported scope: {scope}", code="INVALID_SCOPE")
    return SCOPE_TO_PERMISSION[scope]


def permissions_for_role(role: str) -> frozenset[str]:
    return frozenset(permission for permission, roles in PERMISSIONS.items() if role in roles)


def roles_with_permission(permission: str) -> frozenset[str]:
    return PERMISSIONS.get(permission, frozenset())


def scopes_grant_permission(scopes: Iterable[str], permission: str) -> bool:
    # Keys act only through their scopes; a scope with no mapped permission grants none.
    return any(SCOPE_TO_PERMISSION.get(scope) == permission for scope in scopes)
