from __future__ import annotations

import logging

import pytest

from identity_service.domain.account import Role
from identity_service.domain.roles import (
    RoleCatalog,
    RoleMaps,
    RoleNames,
    RoleObjects,
    RoleResolver,
    normalize_role_field,
)
from identity_service.errors import ValidationError


def test_normalize_role_field_picks_variant_from_first_element():
    admin = Role(name="ADMIN", is_admin=True)
    assert normalize_role_field(["ADMIN", "USER"]) == RoleNames(("ADMIN", "USER"))
    assert normalize_role_field([{"name": "ADMIN"}]) == RoleMaps(({"name": "ADMIN"},))
    assert normalize_role_field([admin]) == RoleObjects((admin,))
    assert normalize_role_field([]) == RoleNames(())


@pytest.mark.parametrize("value", ["ADMIN", None, 42, [1, 2], {"name": "ADMIN"}])
def test_normalize_role_field_rejects_other_shapes(value):
    with pytest.raises(ValidationError):
        normalize_role_field(value)


def _names(roles):
    return {role.name for role in roles}


def test_resolve_all_representations_to_catalog_roles(role_catalog):
    resolver = RoleResolver(role_catalog)
    stale = Role(name="ADMIN", description="stale copy", is_admin=False)

    assert _names(resolver.resolve(["ADMIN", "AUDITOR"])) == {"ADMIN", "AUDITOR"}
    assert _names(resolver.resolve([{"name": "AUDITOR", "description": "ignored"}])) == {"AUDITOR"}
    # role objects are re-read from the catalog, not trusted as sent
    resolved = resolver.resolve([stale])
    assert resolved == {role_catalog.get_by_name("ADMIN")}
    assert all(role.is_admin for role in resolved)


def test_unknown_role_names_fall_back_to_default(role_catalog):
    resolver = RoleResolver(role_catalog)

    assert _names(resolver.resolve(["SUPERUSER"])) == {"USER"}
    assert _names(resolver.resolve([])) == {"USER"}
    assert _names(resolver.resolve(["SUPERUSER", "AUDITOR"])) == {"AUDITOR"}


def test_unknown_roles_without_default_resolve_to_empty_set(role_store):
    role_store.roles = [role for role in role_store.roles if not role.is_default]
    resolver = RoleResolver(RoleCatalog(role_store))

    assert resolver.resolve(["SUPERUSER"]) == frozenset()


def test_maps_without_string_name_are_dropped(role_catalog):
    resolver = RoleResolver(role_catalog)

    assert _names(resolver.resolve([{"name": 7}, {"title": "ADMIN"}])) == {"USER"}


def test_catalog_refresh_replaces_admin_snapshot(role_store, caplog):
    catalog = RoleCatalog(role_store)
    assert catalog.admin_roles().names == {"ADMIN"}

    role_store.roles.append(Role(name="OWNER", is_admin=True))
    assert catalog.admin_roles().names == {"ADMIN"}

    with caplog.at_level(logging.INFO):
        catalog.refresh()
    assert catalog.admin_roles().names == {"ADMIN", "OWNER"}
    assert "role catalog refreshed" in caplog.text
    assert catalog.get_default_role().name == "USER"
