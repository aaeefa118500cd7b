from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

LOCAL_SOURCE = "local"
DEFAULT_LOCALE = "de"


@dataclass(frozen=True, slots=True)
class Role:
    """Named permission grouping owned by the role catalog."""

    name: str
    description: str = ""
    is_admin: bool = False
    is_default: bool = False


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its credential state."""

    account_id: str | None
    email: str
    password_hash: str | None = None
    nonce: str | None = None
    roles: set[Role] = field(default_factory=set)
    source: str = LOCAL_SOURCE
    password_reset_token: str | None = None
    email_to_verify: str | None = None
    email_verify_token: str | None = None
    email_verification_expires_at: datetime | None = None
    last_requested_email_change: datetime | None = None
    locale: str = DEFAULT_LOCALE
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    login_disabled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def username(self) -> str:
        return self.email

    def has_local_authentication(self) -> bool:
        return self.source == LOCAL_SOURCE

    def role_names(self) -> set[str]:
        return {role.name for role in self.roles}

    def is_admin(self) -> bool:
        return any(role.is_admin for role in self.roles)
