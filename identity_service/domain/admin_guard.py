"""Guard that keeps at least one administrator in the system."""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .account import Role
from .contracts import AccountStore
from .roles import AdminRoleSnapshot
from ..errors import AdminInvariantViolation

logger = logging.getLogger(__name__)


class AdminInvariantGuard:
    """Reject role changes and deletions that would remove the last administrator.

    The check reads the repository, so callers run it inside the transaction
    of the write it protects.
    """

    def __init__(self, repository: AccountStore, admin_roles: Callable[[], AdminRoleSnapshot]) -> None:
        self._repository = repository
        self._admin_roles = admin_roles

    def check_remaining_admin(self, account_id: str, proposed_roles: Iterable[Role] | None = None) -> None:
        """Raise ``AdminInvariantViolation`` unless an administrator remains.

        ``proposed_roles=None`` checks the deletion of ``account_id``.
        """
        snapshot = self._admin_roles()
        if not snapshot.names:
            return
        if proposed_roles is not None and snapshot.contains_admin(proposed_roles):
            return
        if self._repository.exists_admin_besides(snapshot.names, account_id):
            return
        logger.warning("rejected change to account %s: no other administrator remains", account_id)
        raise AdminInvariantViolation()
