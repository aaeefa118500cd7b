"""Domain-level request contracts and collaborator protocols shared by multiple layers."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from .account import LOCAL_SOURCE, Account, Role

# Keys an administrator may change through a partial update.
PATCHABLE_FIELDS = frozenset(
    {
        "email",
        "password",
        "first_name",
        "last_name",
        "phone",
        "mobile",
        "locale",
        "roles",
        "login_disabled",
    }
)

# Keys an account owner may change on their own profile.
SELF_UPDATABLE_FIELDS = frozenset({"first_name", "last_name", "phone", "mobile", "locale", "email"})


@dataclass(slots=True)
class AccountInput:
    """Validated inputs for creating or fully replacing an account."""

    email: str
    password: str | None = None
    roles: list[str | dict[str, Any] | Role] = field(default_factory=list)
    source: str = LOCAL_SOURCE
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    locale: str | None = None
    login_disabled: bool = False


@dataclass(slots=True)
class ProfileInput:
    """Fields an account owner may replace on their own profile."""

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    locale: str | None = None
    email: str | None = None


@dataclass(slots=True)
class ExternalUserInfo:
    """Identity claims received from an external authentication provider."""

    username: str
    first_name: str | None = None
    last_name: str | None = None
    roles: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClientContext:
    """Request metadata attached to issued sessions."""

    user_agent: str | None = None


class AccountStore(Protocol):
    """Persistence operations the account workflows depend on."""

    def transaction(self) -> AbstractContextManager[None]: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def find_by_email(self, email: str) -> Account | None: ...

    def find_by_email_verify_token(self, token: str) -> Account | None: ...

    def list_accounts(self, role: str | None = None) -> list[Account]: ...

    def insert_account(self, account: Account) -> Account: ...

    def save_account(self, account: Account) -> Account: ...

    def replace_roles(self, account_id: str, roles: Iterable[Role]) -> None: ...

    def delete_account(self, account_id: str) -> None: ...

    def claim_password_reset_token(self, token: str) -> Account | None: ...

    def exists_admin_besides(self, admin_role_names: Iterable[str], account_id: str | None) -> bool: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None: ...


class RoleStore(Protocol):
    """Read access to the role catalog."""

    def list_roles(self) -> list[Role]: ...


class Notifier(Protocol):
    """Outbound messaging collaborator; raises ``NotificationError`` on failure."""

    def send_reset_token(self, email: str, token: str, locale: str) -> None: ...

    def send_new_account(self, email: str, token: str, locale: str) -> None: ...

    def send_email_verification(self, email: str, token: str, locale: str) -> None: ...
