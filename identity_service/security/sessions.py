"""Refresh-token sessions and access-token renewal."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Protocol

import jwt

from ..config import Settings, get_settings
from ..domain.account import Account
from ..domain.contracts import ClientContext
from ..errors import AuthenticationFailed, ResourceNotFound
from ..metrics import SESSION_RENEWALS
from ..repository import SessionTokenRecord
from .tokens import decode_access_token, generate_refresh_token, hash_refresh_token, issue_access_token

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AccessToken:
    """Short-lived bearer credential returned to API consumers."""

    token: str
    expires_in: int


class SessionStore(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...

    def find_by_email(self, email: str) -> Account | None: ...

    def create_session_token(
        self,
        *,
        account_id: str,
        username: str,
        token_hash: str,
        user_agent: str | None,
        nonce: str | None,
        expires_at: datetime,
    ) -> SessionTokenRecord: ...

    def find_session_token(self, token_hash: str) -> SessionTokenRecord | None: ...

    def get_session_token(self, token_id: str) -> SessionTokenRecord | None: ...

    def touch_session_token(self, token_id: str, user_agent: str | None) -> None: ...

    def list_session_tokens(self, account_id: str) -> Iterable[SessionTokenRecord]: ...

    def revoke_session_token(self, token_id: str) -> None: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None: ...


class SessionTokenService:
    """Issue, renew and revoke sessions keyed by account identity.

    A session is an opaque refresh token, stored hashed, that remembers the
    account nonce it was issued under. Rotating the nonce on the account
    therefore invalidates every session issued before the rotation.
    """

    def __init__(self, repository: SessionStore, settings: Settings | None = None) -> None:
        self._repository = repository
        self._settings = settings or get_settings()

    def login(self, account: Account, client_context: ClientContext) -> str:
        """Open a session for an already authenticated account and return its refresh token."""
        refresh_token, token_hash = generate_refresh_token()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._settings.refresh_ttl_seconds)
        record = self._repository.create_session_token(
            account_id=account.account_id,
            username=account.username,
            token_hash=token_hash,
            user_agent=client_context.user_agent,
            nonce=account.nonce,
            expires_at=expires_at,
        )
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="session.created",
            actor=account.account_id,
            metadata={"token_id": record.token_id, "user_agent": client_context.user_agent},
        )
        return refresh_token

    def renew(self, refresh_token: str, client_context: ClientContext) -> AccessToken:
        """Exchange a refresh token for a new access token."""
        try:
            record, account = self._resolve_session(refresh_token)
        except AuthenticationFailed:
            SESSION_RENEWALS.labels(outcome="rejected").inc()
            raise

        self._repository.touch_session_token(record.token_id, client_context.user_agent)
        token, expires_in = issue_access_token(
            subject=account.username,
            account_id=account.account_id,
            nonce=account.nonce,
            session_id=record.token_id,
            roles=list(account.role_names()),
        )
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="session.renewed",
            actor=account.account_id,
            metadata={"token_id": record.token_id},
        )
        SESSION_RENEWALS.labels(outcome="success").inc()
        return AccessToken(token=token, expires_in=expires_in)

    def authenticate_access_token(self, token: str) -> Account:
        """Return the account a bearer token was issued to, if it is still valid."""
        try:
            claims = decode_access_token(token)
        except jwt.PyJWTError as exc:
            raise AuthenticationFailed("invalid access token") from exc

        account = self._repository.get_account(claims["uid"])
        if account is None or account.login_disabled:
            raise AuthenticationFailed("account unavailable")
        if claims.get("nonce") != account.nonce:
            raise AuthenticationFailed("access token was invalidated")
        session = self._repository.get_session_token(claims["sid"])
        if session is None or session.revoked_at is not None:
            raise AuthenticationFailed("session revoked")
        return account

    def list_tokens(self, username: str) -> list[SessionTokenRecord]:
        account = self._account_for(username)
        return [
            record
            for record in self._repository.list_session_tokens(account.account_id)
            if record.revoked_at is None
        ]

    def revoke(self, username: str, token_id: str) -> None:
        account = self._account_for(username)
        record = self._repository.get_session_token(token_id)
        if record is None or record.account_id != account.account_id:
            raise ResourceNotFound("session token not found")
        self._repository.revoke_session_token(token_id)
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="session.revoked",
            actor=account.account_id,
            metadata={"token_id": token_id},
        )

    def revoke_all(self, account_id: str) -> None:
        for record in self._repository.list_session_tokens(account_id):
            if record.revoked_at is None:
                self._repository.revoke_session_token(record.token_id)

    def _resolve_session(self, refresh_token: str) -> tuple[SessionTokenRecord, Account]:
        record = self._repository.find_session_token(hash_refresh_token(refresh_token))
        if record is None:
            raise AuthenticationFailed("invalid refresh token")
        if record.revoked_at is not None:
            raise AuthenticationFailed("refresh token revoked")
        if record.expires_at <= datetime.now(timezone.utc):
            self._repository.revoke_session_token(record.token_id)
            raise AuthenticationFailed("refresh token expired")

        account = self._repository.get_account(record.account_id)
        if account is None or account.login_disabled:
            self._repository.revoke_session_token(record.token_id)
            raise AuthenticationFailed("account unavailable")
        if record.nonce != account.nonce:
            logger.info("session %s invalidated by credential change", record.token_id)
            self._repository.revoke_session_token(record.token_id)
            raise AuthenticationFailed("refresh token was invalidated")
        return record, account

    def _account_for(self, username: str) -> Account:
        account = self._repository.find_by_email(username.lower())
        if account is None:
            raise ResourceNotFound(f"user '{username}' not found")
        return account
