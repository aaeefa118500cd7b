from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

import pytest

from identity_service.config import Settings
from identity_service.domain.account import Account, Role
from identity_service.domain.contracts import AccountInput
from identity_service.domain.roles import RoleCatalog
from identity_service.domain.service import AccountService
from identity_service.errors import NotificationError
from identity_service.repository import SessionTokenRecord

ADMIN = Role(name="ADMIN", description="Administrator", is_admin=True)
USER = Role(name="USER", description="Regular user", is_default=True)
AUDITOR = Role(name="AUDITOR", description="Read-only access")


def _clone(account: Account) -> Account:
    return replace(account, roles=set(account.roles))


class FakeRoleStore:
    """In-memory role catalog storage."""

    def __init__(self, roles: list[Role]) -> None:
        self.roles = list(roles)

    def list_roles(self) -> list[Role]:
        return list(self.roles)


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours.

    Reads return copies, so only explicit saves change stored state, and a
    failing ``transaction()`` block restores the state it started from.
    """

    def __init__(self, role_store: FakeRoleStore) -> None:
        self._role_store = role_store
        self._accounts: dict[str, Account] = {}
        self._account_roles: dict[str, set[str]] = {}
        self._sessions: dict[str, SessionTokenRecord] = {}
        self._session_hashes: dict[str, str] = {}
        self.audit_log: list[FakeAuditLogRecord] = []
        self.role_writes: list[tuple[str, list[str]]] = []

    @contextmanager
    def transaction(self):
        snapshot = (
            {key: _clone(value) for key, value in self._accounts.items()},
            {key: set(value) for key, value in self._account_roles.items()},
            {key: replace(value) for key, value in self._sessions.items()},
            dict(self._session_hashes),
            len(self.audit_log),
        )
        try:
            yield
        except Exception:
            accounts, account_roles, sessions, hashes, audit_len = snapshot
            self._accounts = accounts
            self._account_roles = account_roles
            self._sessions = sessions
            self._session_hashes = hashes
            del self.audit_log[audit_len:]
            raise

    def _load(self, account_id: str) -> Account:
        account = _clone(self._accounts[account_id])
        catalog = {role.name: role for role in self._role_store.list_roles()}
        account.roles = {catalog[name] for name in self._account_roles.get(account_id, set()) if name in catalog}
        return account

    def get_account(self, account_id: str) -> Account | None:
        if account_id not in self._accounts:
            return None
        return self._load(account_id)

    def find_by_email(self, email: str) -> Account | None:
        for account_id, account in self._accounts.items():
            if account.email.lower() == email.lower():
                return self._load(account_id)
        return None

    def find_by_email_verify_token(self, token: str) -> Account | None:
        for account_id, account in self._accounts.items():
            if account.email_verify_token == token:
                return self._load(account_id)
        return None

    def list_accounts(self, role: str | None = None) -> list[Account]:
        accounts = [self._load(account_id) for account_id in self._accounts]
        if role is not None:
            accounts = [account for account in accounts if role in account.role_names()]
        return sorted(accounts, key=lambda account: account.email)

    def insert_account(self, account: Account) -> Account:
        now = datetime.now(timezone.utc)
        account.account_id = account.account_id or str(uuid.uuid4())
        account.created_at = now
        account.updated_at = now
        self._accounts[account.account_id] = _clone(account)
        self.replace_roles(account.account_id, account.roles)
        return account

    def save_account(self, account: Account) -> Account:
        account.updated_at = datetime.now(timezone.utc)
        self._accounts[account.account_id] = _clone(account)
        return account

    def replace_roles(self, account_id: str, roles) -> None:
        names = sorted({role.name for role in roles})
        self.role_writes.append((account_id, names))
        self._account_roles[account_id] = set(names)

    def delete_account(self, account_id: str) -> None:
        self._accounts.pop(account_id, None)
        self._account_roles.pop(account_id, None)
        for token_id, record in list(self._sessions.items()):
            if record.account_id == account_id:
                del self._sessions[token_id]

    def claim_password_reset_token(self, token: str) -> Account | None:
        for account_id, account in self._accounts.items():
            if account.password_reset_token == token:
                account.password_reset_token = None
                return self._load(account_id)
        return None

    def exists_admin_besides(self, admin_role_names, account_id: str | None) -> bool:
        names = set(admin_role_names)
        return any(
            holder != account_id and role_names & names
            for holder, role_names in self._account_roles.items()
        )

    def create_session_token(
        self,
        *,
        account_id: str,
        username: str,
        token_hash: str,
        user_agent: str | None,
        nonce: str | None,
        expires_at: datetime,
    ) -> SessionTokenRecord:
        record = SessionTokenRecord(
            token_id=str(uuid.uuid4()),
            account_id=account_id,
            username=username,
            user_agent=user_agent,
            nonce=nonce,
            issued_at=datetime.now(timezone.utc),
            expires_at=expires_at,
        )
        self._sessions[record.token_id] = record
        self._session_hashes[token_hash] = record.token_id
        return replace(record)

    def find_session_token(self, token_hash: str) -> SessionTokenRecord | None:
        token_id = self._session_hashes.get(token_hash)
        if token_id is None or token_id not in self._sessions:
            return None
        return replace(self._sessions[token_id])

    def get_session_token(self, token_id: str) -> SessionTokenRecord | None:
        record = self._sessions.get(token_id)
        return replace(record) if record else None

    def list_session_tokens(self, account_id: str) -> list[SessionTokenRecord]:
        return [replace(record) for record in self._sessions.values() if record.account_id == account_id]

    def touch_session_token(self, token_id: str, user_agent: str | None) -> None:
        record = self._sessions[token_id]
        record.last_used_at = datetime.now(timezone.utc)
        if user_agent:
            record.user_agent = user_agent

    def revoke_session_token(self, token_id: str) -> None:
        record = self._sessions.get(token_id)
        if record and record.revoked_at is None:
            record.revoked_at = datetime.now(timezone.utc)

    def expire_sessions(self) -> None:
        for record in self._sessions.values():
            record.expires_at = datetime.now(timezone.utc).replace(year=2000)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        self.audit_log.append(
            FakeAuditLogRecord(
                account_id=account_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
            )
        )

    def stored(self, account_id: str) -> Account:
        return self._load(account_id)

    def event_types(self) -> list[str]:
        return [record.event_type for record in self.audit_log]


@dataclass
class FakeAuditLogRecord:
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict = field(default_factory=dict)


class RecordingNotifier:
    """Notifier capturing outbound messages; can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, str]] = []
        self.fail = False

    def _record(self, kind: str, email: str, token: str, locale: str) -> None:
        if self.fail:
            raise NotificationError("smtp unavailable")
        self.sent.append((kind, email, token, locale))

    def send_reset_token(self, email: str, token: str, locale: str) -> None:
        self._record("reset", email, token, locale)

    def send_new_account(self, email: str, token: str, locale: str) -> None:
        self._record("new_account", email, token, locale)

    def send_email_verification(self, email: str, token: str, locale: str) -> None:
        self._record("verify_email", email, token, locale)

    def of_kind(self, kind: str) -> list[tuple[str, str, str, str]]:
        return [message for message in self.sent if message[0] == kind]


@pytest.fixture
def role_store() -> FakeRoleStore:
    return FakeRoleStore([ADMIN, USER, AUDITOR])


@pytest.fixture
def role_catalog(role_store) -> RoleCatalog:
    return RoleCatalog(role_store)


@pytest.fixture
def repository(role_store) -> FakeRepository:
    return FakeRepository(role_store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return Settings(email_validation_disabled=False, email_verification_ttl_seconds=3600)


@pytest.fixture
def service(repository, role_catalog, notifier, settings) -> AccountService:
    return AccountService(repository, role_catalog, notifier=notifier, settings=settings)


@pytest.fixture
def admin(service) -> Account:
    return service.create_account(
        AccountInput(email="Admin@Example.com", password="admin-secret", roles=["ADMIN"])
    )


@pytest.fixture
def member(service) -> Account:
    return service.create_account(
        AccountInput(email="member@example.com", password="member-secret", roles=["USER"])
    )
