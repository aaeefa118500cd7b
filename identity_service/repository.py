"""Database repositories for accounts, roles, sessions and the audit trail."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from psycopg import Connection
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, Role

# Connection bound by ``transaction()``; repository calls made inside the
# block share it so reads and writes commit or roll back together.
_current_connection: ContextVar[Connection | None] = ContextVar("identity_connection", default=None)

_ACCOUNT_COLUMNS = """
    account_id, email, password_hash, nonce, source, password_reset_token,
    email_to_verify, email_verify_token, email_verification_expires_at,
    last_requested_email_change, locale, first_name, last_name, phone, mobile,
    login_disabled, created_at, updated_at
"""


@dataclass(slots=True)
class SessionTokenRecord:
    """DTO mapping the session_tokens table for repository consumers."""

    token_id: str
    account_id: str
    username: str
    user_agent: str | None
    nonce: str | None
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None


class _PooledRepository:
    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed repository calls on one connection and transaction.

        Nested blocks join the outer transaction. The pool commits when the
        outermost block exits cleanly and rolls back on any exception.
        """
        if _current_connection.get() is not None:
            yield
            return
        with self._pool.connection() as conn:
            token = _current_connection.set(conn)
            try:
                yield
            finally:
                _current_connection.reset(token)

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        conn = _current_connection.get()
        if conn is not None:
            yield conn
            return
        with self._pool.connection() as conn:
            yield conn


class RoleRepository(_PooledRepository):
    """Postgres-backed role catalog storage."""

    def list_roles(self) -> list[Role]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT name, description, is_admin, is_default
                    FROM roles
                    ORDER BY name
                    """
                )
                return [
                    Role(name=row[0], description=row[1] or "", is_admin=row[2], is_default=row[3])
                    for row in cur.fetchall()
                ]


class AccountRepository(_PooledRepository):
    """Postgres-backed account persistence.

    Accounts and their role associations are written separately: columns via
    :meth:`save_account`, roles via :meth:`replace_roles`.
    """

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by identifier or return ``None``."""
        return self._fetch_one("account_id = %s", (account_id,))

    def find_by_email(self, email: str) -> Account | None:
        return self._fetch_one("lower(email) = lower(%s)", (email,))

    def find_by_email_verify_token(self, token: str) -> Account | None:
        return self._fetch_one("email_verify_token = %s", (token,))

    def list_accounts(self, role: str | None = None) -> list[Account]:
        """Return all accounts ordered by email, optionally only holders of ``role``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if role is None:
                    cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY email")
                else:
                    cur.execute(
                        f"""
                        SELECT {_ACCOUNT_COLUMNS}
                        FROM accounts
                        WHERE account_id IN (
                            SELECT account_id FROM account_roles WHERE role_name = %s
                        )
                        ORDER BY email
                        """,
                        (role,),
                    )
                accounts = [self._map_record(row) for row in cur.fetchall()]
                if not accounts:
                    return []
                cur.execute(
                    """
                    SELECT ar.account_id, r.name, r.description, r.is_admin, r.is_default
                    FROM account_roles ar
                    JOIN roles r ON r.name = ar.role_name
                    WHERE ar.account_id = ANY(%s)
                    """,
                    ([account.account_id for account in accounts],),
                )
                by_id = {account.account_id: account for account in accounts}
                for row in cur.fetchall():
                    by_id[row[0]].roles.add(
                        Role(name=row[1], description=row[2] or "", is_admin=row[3], is_default=row[4])
                    )
        return accounts

    def insert_account(self, account: Account) -> Account:
        """Persist a new account row and its role associations."""
        now = datetime.now(timezone.utc)
        account.account_id = account.account_id or str(uuid.uuid4())
        account.created_at = now
        account.updated_at = now
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    self._account_params(account),
                )
        self.replace_roles(account.account_id, account.roles)
        return account

    def save_account(self, account: Account) -> Account:
        """Update the account's columns; role associations are left untouched."""
        account.updated_at = datetime.now(timezone.utc)
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts SET
                        email = %s, password_hash = %s, nonce = %s, source = %s,
                        password_reset_token = %s, email_to_verify = %s,
                        email_verify_token = %s, email_verification_expires_at = %s,
                        last_requested_email_change = %s, locale = %s, first_name = %s,
                        last_name = %s, phone = %s, mobile = %s, login_disabled = %s,
                        updated_at = %s
                    WHERE account_id = %s
                    """,
                    (*self._account_params(account)[1:16], account.updated_at, account.account_id),
                )
        return account

    def replace_roles(self, account_id: str, roles: Iterable[Role]) -> None:
        """Clear the account's role associations and attach ``roles``."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM account_roles WHERE account_id = %s", (account_id,))
                names = sorted({role.name for role in roles})
                if names:
                    cur.executemany(
                        "INSERT INTO account_roles (account_id, role_name) VALUES (%s, %s)",
                        [(account_id, name) for name in names],
                    )

    def delete_account(self, account_id: str) -> None:
        """Remove the account together with its role associations and sessions."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM session_tokens WHERE account_id = %s", (account_id,))
                cur.execute("DELETE FROM account_roles WHERE account_id = %s", (account_id,))
                cur.execute("DELETE FROM accounts WHERE account_id = %s", (account_id,))

    def claim_password_reset_token(self, token: str) -> Account | None:
        """Clear ``token`` and return its account; at most one caller wins per token."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET password_reset_token = NULL, updated_at = NOW()
                    WHERE password_reset_token = %s
                    RETURNING account_id
                    """,
                    (token,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return self.get_account(row[0])

    def exists_admin_besides(self, admin_role_names: Iterable[str], account_id: str | None) -> bool:
        """Return ``True`` when an account other than ``account_id`` holds an admin role.

        The matching association rows stay locked until the surrounding
        transaction ends, serialising concurrent admin demotions.
        """
        names = sorted(admin_role_names)
        if not names:
            return False
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT account_id
                    FROM account_roles
                    WHERE role_name = ANY(%s)
                    FOR UPDATE
                    """,
                    (names,),
                )
                return any(row[0] != account_id for row in cur.fetchall())

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
        """Persist a hashed refresh token associated with an account."""
        token_id = str(uuid.uuid4())
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO session_tokens
                        (token_id, account_id, username, token_hash, user_agent, nonce, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, NOW(), %s)
                    RETURNING token_id, account_id, username, user_agent, nonce,
                              issued_at, expires_at, last_used_at, revoked_at
                    """,
                    (token_id, account_id, username, token_hash, user_agent, nonce, expires_at),
                )
                row = cur.fetchone()
        return SessionTokenRecord(*row)

    def find_session_token(self, token_hash: str) -> SessionTokenRecord | None:
        """Return the session record for the provided refresh token hash."""
        return self._fetch_session("token_hash = %s", (token_hash,))

    def get_session_token(self, token_id: str) -> SessionTokenRecord | None:
        return self._fetch_session("token_id = %s", (token_id,))

    def list_session_tokens(self, account_id: str) -> list[SessionTokenRecord]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT token_id, account_id, username, user_agent, nonce,
                           issued_at, expires_at, last_used_at, revoked_at
                    FROM session_tokens
                    WHERE account_id = %s
                    ORDER BY issued_at DESC
                    """,
                    (account_id,),
                )
                return [SessionTokenRecord(*row) for row in cur.fetchall()]

    def touch_session_token(self, token_id: str, user_agent: str | None) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE session_tokens
                    SET last_used_at = NOW(), user_agent = COALESCE(%s, user_agent)
                    WHERE token_id = %s
                    """,
                    (user_agent, token_id),
                )

    def revoke_session_token(self, token_id: str) -> None:
        """Mark the given session token as revoked."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE session_tokens
                    SET revoked_at = NOW()
                    WHERE token_id = %s AND revoked_at IS NULL
                    """,
                    (token_id,),
                )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account_id, event_type, actor, Json(metadata or {})),
                )

    def _fetch_one(self, where_sql: str, params: tuple) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
                if not row:
                    return None
                account = self._map_record(row)
                cur.execute(
                    """
                    SELECT r.name, r.description, r.is_admin, r.is_default
                    FROM account_roles ar
                    JOIN roles r ON r.name = ar.role_name
                    WHERE ar.account_id = %s
                    """,
                    (account.account_id,),
                )
                account.roles = {
                    Role(name=r[0], description=r[1] or "", is_admin=r[2], is_default=r[3])
                    for r in cur.fetchall()
                }
        return account

    def _fetch_session(self, where_sql: str, params: tuple) -> SessionTokenRecord | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT token_id, account_id, username, user_agent, nonce,
                           issued_at, expires_at, last_used_at, revoked_at
                    FROM session_tokens
                    WHERE {where_sql}
                    """,
                    params,
                )
                row = cur.fetchone()
        if not row:
            return None
        return SessionTokenRecord(*row)

    @staticmethod
    def _account_params(account: Account) -> tuple:
        return (
            account.account_id,
            account.email,
            account.password_hash,
            account.nonce,
            account.source,
            account.password_reset_token,
            account.email_to_verify,
            account.email_verify_token,
            account.email_verification_expires_at,
            account.last_requested_email_change,
            account.locale,
            account.first_name,
            account.last_name,
            account.phone,
            account.mobile,
            account.login_disabled,
            account.created_at,
            account.updated_at,
        )

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            password_hash=row[2],
            nonce=row[3],
            source=row[4],
            password_reset_token=row[5],
            email_to_verify=row[6],
            email_verify_token=row[7],
            email_verification_expires_at=row[8],
            last_requested_email_change=row[9],
            locale=row[10],
            first_name=row[11],
            last_name=row[12],
            phone=row[13],
            mobile=row[14],
            login_disabled=row[15],
            created_at=row[16],
            updated_at=row[17],
        )
