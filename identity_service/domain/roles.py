"""Role catalog access and resolution of role references into ``Role`` entities."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

from .account import Role
from .contracts import RoleStore
from ..errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdminRoleSnapshot:
    """Read-only view of which role names carry administrator rights."""

    names: frozenset[str] = frozenset()

    def contains_admin(self, roles: Iterable[Role]) -> bool:
        return any(role.name in self.names for role in roles)


class RoleCatalog:
    """Cached, read-only view over the role store.

    The cache is swapped wholesale by :meth:`refresh`; request handlers only
    ever read the current snapshot.
    """

    def __init__(self, store: RoleStore) -> None:
        self._store = store
        self._roles: dict[str, Role] = {}
        self._admin_snapshot = AdminRoleSnapshot()
        self.refresh()

    def refresh(self) -> None:
        roles = {role.name: role for role in self._store.list_roles()}
        self._roles = roles
        self._admin_snapshot = AdminRoleSnapshot(
            frozenset(name for name, role in roles.items() if role.is_admin)
        )
        logger.info(
            "role catalog refreshed: %d roles, admin roles=%s",
            len(roles),
            sorted(self._admin_snapshot.names),
        )

    def get_by_name(self, name: str) -> Role | None:
        return self._roles.get(name)

    def get_default_role(self) -> Role | None:
        for role in self._roles.values():
            if role.is_default:
                return role
        return None

    def admin_roles(self) -> AdminRoleSnapshot:
        return self._admin_snapshot


@dataclass(frozen=True, slots=True)
class RoleNames:
    names: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class RoleMaps:
    maps: tuple[Mapping[str, Any], ...]


@dataclass(frozen=True, slots=True)
class RoleObjects:
    roles: tuple[Role, ...]


RoleReferences = Union[RoleNames, RoleMaps, RoleObjects]


def normalize_role_field(value: Any) -> RoleReferences:
    """Classify a ``roles`` payload value by the shape of its first element."""
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError("roles must be a collection of role names, role maps or roles")
    items = tuple(value)
    if not items:
        return RoleNames(())
    first = items[0]
    if isinstance(first, str):
        return RoleNames(tuple(item for item in items if isinstance(item, str)))
    if isinstance(first, Mapping):
        return RoleMaps(tuple(item for item in items if isinstance(item, Mapping)))
    if isinstance(first, Role):
        return RoleObjects(tuple(item for item in items if isinstance(item, Role)))
    raise ValidationError("roles must be a collection of role names, role maps or roles")


class RoleResolver:
    """Translate role references into catalog roles with default-role fallback."""

    def __init__(self, catalog: RoleCatalog) -> None:
        self._catalog = catalog

    def resolve(self, references: RoleReferences | Iterable[Any]) -> frozenset[Role]:
        """Resolve ``references`` against the catalog.

        Unknown names are dropped silently so that stale client data does not
        fail the request. An empty result falls back to the default role when
        one is configured.
        """
        if not isinstance(references, (RoleNames, RoleMaps, RoleObjects)):
            references = normalize_role_field(list(references))

        resolved: set[Role] = set()
        for name in self._names(references):
            role = self._catalog.get_by_name(name)
            if role is not None:
                resolved.add(role)

        if not resolved:
            default_role = self._catalog.get_default_role()
            if default_role is not None:
                resolved.add(default_role)
        return frozenset(resolved)

    @staticmethod
    def _names(references: RoleReferences) -> list[str]:
        if isinstance(references, RoleNames):
            return list(references.names)
        if isinstance(references, RoleMaps):
            return [entry["name"] for entry in references.maps if isinstance(entry.get("name"), str)]
        return [role.name for role in references.roles]
