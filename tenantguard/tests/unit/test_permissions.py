from __future__ import annotations

import pytest

from tenantguard.core.errors import ValidationError
from tenantguard.domain.entities import API_SCOPES, ROLES
from tenantguard.services.authz.permissions import (
    PERMISSIONS,
    PERMISSIONS_LIST,
    ROLE_ORDER,
    SCOPE_TO_PERMISSION,
    can_modify_member,
    has_permission,
    normalize_role,
    normalize_scopes,
    permissions_for_role,
    role_rank,
    roles_with_permission,
    scope_requires_permission,
    scopes_grant_permission,
)


def test_permission_table_is_consistent_with_role_lookups() -> None:
    # Every (permission, role) pair agrees across the three lookup directions.
    for permission in PERMISSIONS_LIST:
        for role in ROLE_ORDER:
            allowed = has_permission(role, permission)
            assert allowed == (role in roles_with_permission(permission))
            assert allowed == (permission in permissions_for_role(role))


def test_every_declared_role_and_scope_is_in_the_tables() -> None:
    assert set(ROLES) == set(ROLE_ORDER)
    assert set(API_SCOPES) == set(SCOPE_TO_PERMISSION)
    assert set(PERMISSIONS_LIST) == set(PERMISSIONS)


def test_owner_holds_every_permission_and_viewer_only_reads() -> None:
    assert permissions_for_role("owner") == frozenset(PERMISSIONS_LIST)
    assert permissions_for_role("viewer") == frozenset({"analytics.view"})


def test_unknown_role_or_permission_is_never_granted() -> None:
    assert has_permission("superuser", "analytics.view") is False
    assert has_permission("owner", "does.not.exist") is False
    assert role_rank("superuser") == 0


@pytest.mark.parametrize("actor", list(ROLE_ORDER))
@pytest.mark.parametrize("target", list(ROLE_ORDER))
def test_can_modify_member_requires_strictly_higher_rank(actor: str, target: str) -> None:
    assert can_modify_member(actor, target) == (ROLE_ORDER[actor] > ROLE_ORDER[target])


def test_owner_cannot_modify_another_owner() -> None:
    assert can_modify_member("owner", "owner") is False
    assert can_modify_member("owner", "admin") is True


def test_normalize_role_lowercases_and_rejects_unknown() -> None:
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValidationError) as exc_info:
        normalize_role("root")
    assert exc_info.value.code == "INVALID_ROLE"


def test_normalize_scopes_dedupes_in_order() -> None:
    assert normalize_scopes(["analytics.view", "events.track", "analytics.view"]) == (
        "analytics.view",
        "events.track",
    )


@pytest.mark.parametrize("scopes", [[], ["analytics.delete"]])
def test_normalize_scopes_rejects_empty_and_unknown(scopes: list[str]) -> None:
    with pytest.raises(ValidationError) as exc_info:
        normalize_scopes(scopes)
    assert exc_info.value.code == "INVALID_SCOPE"


def test_scope_permission_mapping() -> None:
    assert scope_requires_permission("events.track") is None
    assert scope_requires_permission("workspace.read") == "analytics.view"
    with pytest.raises(ValidationError):
        scope_requires_permission("members.manage")


def test_scopes_grant_only_mapped_permissions() -> None:
    assert scopes_grant_permission(["workspace.read"], "analytics.view") is True
    assert scopes_grant_permission(["events.track"], "analytics.view") is False
    # No scope maps to a management permission, whatever the key holds.
    assert scopes_grant_permission(list(API_SCOPES), "apiKeys.manage") is False


def test_tables_are_read_only() -> None:
    with pytest.raises(TypeError):
        PERMISSIONS["analytics.view"] = frozenset()  # type: ignore[index]
