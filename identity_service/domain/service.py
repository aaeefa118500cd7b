"""Account service orchestrating persistence, credential rules, roles and sessions."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping

from .account import Account
from .admin_guard import AdminInvariantGuard
from .contracts import (
    PATCHABLE_FIELDS,
    SELF_UPDATABLE_FIELDS,
    AccountInput,
    AccountStore,
    ClientContext,
    ExternalUserInfo,
    Notifier,
    ProfileInput,
)
from .credentials import CredentialSanitizer
from .email_change import EmailChangeVerificationFlow, VerificationMail
from .password_reset import PasswordResetFlow
from .roles import RoleCatalog, RoleResolver, normalize_role_field
from ..config import Settings, get_settings
from ..errors import (
    AuthenticationFailed,
    DuplicateResource,
    InvalidCredential,
    NotAllowed,
    ResourceNotFound,
    ValidationError,
)
from ..metrics import LOGIN_ATTEMPTS, PASSWORD_RESETS
from ..notifications import LoggingNotifier, dispatch
from ..repository import SessionTokenRecord
from ..security.passwords import generate_nonce, generate_random_password, generate_single_use_token
from ..security.sessions import AccessToken, SessionTokenService

logger = logging.getLogger(__name__)

_TEXT_FIELDS = frozenset({"first_name", "last_name", "phone", "mobile", "locale"})


class AccountService:
    """Account workflows enforcing credential, role and email-verification rules.

    ``notifier`` defaults to :class:`LoggingNotifier`; ``sessions`` defaults to
    a :class:`SessionTokenService` over the same repository.
    """

    def __init__(
        self,
        repository: AccountStore,
        role_catalog: RoleCatalog,
        *,
        notifier: Notifier | None = None,
        sessions: SessionTokenService | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Store dependencies and compose the credential, role and verification components."""
        self._repository = repository
        self._settings = settings or get_settings()
        self._notifier = notifier or LoggingNotifier()
        self._sessions = sessions or SessionTokenService(repository, self._settings)
        self._role_catalog = role_catalog
        self._roles = RoleResolver(role_catalog)
        self._guard = AdminInvariantGuard(repository, role_catalog.admin_roles)
        self._sanitizer = CredentialSanitizer(repository)
        self._password_reset = PasswordResetFlow(repository, self._sanitizer, self._notifier)
        self._email_change = EmailChangeVerificationFlow(
            repository,
            self._notifier,
            token_ttl=timedelta(seconds=self._settings.email_verification_ttl_seconds),
        )

    @property
    def sessions(self) -> SessionTokenService:
        return self._sessions

    def get_account(self, account_id: str) -> Account | None:
        """Retrieve an account by identifier."""
        return self._repository.get_account(account_id)

    def load_by_username(self, username: str) -> Account:
        account = self._repository.find_by_email(username.strip().lower())
        if account is None:
            raise ResourceNotFound(f"user '{username}' not found")
        return account

    def list_accounts(self, role: str | None = None) -> list[Account]:
        """List accounts, restricted to holders of ``role`` when given."""
        if role is not None and self._role_catalog.get_by_name(role) is None:
            raise ResourceNotFound(f"role '{role}' not found")
        return self._repository.list_accounts(role)

    def create_account(self, payload: AccountInput) -> Account:
        """Create an account; local accounts without a password get a reset token instead."""
        email = payload.email.strip().lower()
        if self._repository.find_by_email(email) is not None:
            raise DuplicateResource(f"user with email '{email}' already exists")

        account = Account(
            account_id=None,
            email=email,
            source=payload.source,
            locale=payload.locale or self._settings.default_locale,
            first_name=payload.first_name,
            last_name=payload.last_name,
            phone=payload.phone,
            mobile=payload.mobile,
            login_disabled=payload.login_disabled,
        )
        if account.has_local_authentication():
            password = payload.password
            if not password or not password.strip():
                password = generate_random_password()
                account.password_reset_token = generate_single_use_token()
            self._sanitizer.sanitize(account, password)
        account.nonce = generate_nonce()
        account.roles = set(self._roles.resolve(payload.roles))

        with self._repository.transaction():
            account = self._repository.insert_account(account)
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="account.created",
                actor=account.account_id,
                metadata={"email": account.email, "roles": sorted(account.role_names())},
            )
        logger.info("created account %s (source=%s)", account.account_id, account.source)

        if account.has_local_authentication() and account.password_reset_token:
            dispatch(self._notifier.send_new_account, account.email, account.password_reset_token, account.locale)
        return account

    def create_external_account(self, user_info: ExternalUserInfo, source: str) -> Account:
        """Create the account for a first sign-in through an external provider."""
        return self.create_account(
            AccountInput(
                email=user_info.username,
                roles=list(user_info.roles),
                source=source,
                first_name=user_info.first_name,
                last_name=user_info.last_name,
            )
        )

    def update_account(self, account_id: str, payload: AccountInput) -> Account:
        """Replace an account with ``payload``.

        The authentication source and any pending password reset survive the
        replacement. While email verification is enabled the visible email
        never changes here; a new address only starts a verification.
        """
        with self._repository.transaction():
            existing = self._repository.get_account(account_id)
            if existing is None:
                raise ResourceNotFound("user does not exist")

            roles = self._roles.resolve(payload.roles)
            self._guard.check_remaining_admin(account_id, roles)

            account = Account(
                account_id=account_id,
                email=payload.email.strip().lower(),
                roles=set(roles),
                source=existing.source,
                password_reset_token=existing.password_reset_token,
                email_to_verify=existing.email_to_verify,
                email_verify_token=existing.email_verify_token,
                email_verification_expires_at=existing.email_verification_expires_at,
                last_requested_email_change=existing.last_requested_email_change,
                locale=payload.locale or existing.locale,
                first_name=payload.first_name,
                last_name=payload.last_name,
                phone=payload.phone,
                mobile=payload.mobile,
                login_disabled=payload.login_disabled,
                created_at=existing.created_at,
            )
            self._sanitizer.sanitize(account, payload.password)
            mail = self._apply_email_change(existing, account, payload.email)
            account = self._persist_with_roles(account)
            self._repository.write_audit_event(
                account_id=account_id,
                event_type="account.updated",
                actor=None,
                metadata={"roles": sorted(account.role_names())},
            )
        self._email_change.send(mail)
        return account

    def patch_account(self, account_id: str, fields: Mapping[str, Any]) -> Account:
        """Apply a partial update; keys outside the patch allow-list are ignored."""
        updates = {key: value for key, value in fields.items() if key in PATCHABLE_FIELDS}

        with self._repository.transaction():
            account = self._repository.get_account(account_id)
            if account is None:
                raise ResourceNotFound("user does not exist")

            if "roles" in updates:
                roles = self._roles.resolve(normalize_role_field(updates.pop("roles")))
                self._guard.check_remaining_admin(account_id, roles)
                account.roles = set(roles)

            mail = None
            password_present = "password" in updates
            password = updates.pop("password", None)
            new_email = updates.pop("email", None)
            self._apply_fields(account, updates)

            if password_present:
                if password is not None and not isinstance(password, str):
                    raise ValidationError("password must be a string")
                self._sanitizer.sanitize(account, password)

            if new_email is not None:
                if not isinstance(new_email, str):
                    raise ValidationError("email must be a string")
                mail = self._apply_email_change(account, account, new_email)

            account = self._persist_with_roles(account)
            self._repository.write_audit_event(
                account_id=account_id,
                event_type="account.patched",
                actor=None,
                metadata={"fields": sorted(key for key in fields if key in PATCHABLE_FIELDS)},
            )
        self._email_change.send(mail)
        return account

    def delete_account(self, account_id: str) -> None:
        """Delete an account unless it would remove the last administrator."""
        with self._repository.transaction():
            if self._repository.get_account(account_id) is None:
                raise ResourceNotFound("user does not exist")
            self._guard.check_remaining_admin(account_id)
            self._repository.delete_account(account_id)
            self._repository.write_audit_event(
                account_id=account_id,
                event_type="account.deleted",
                actor=None,
            )
        logger.info("deleted account %s", account_id)

    def terminate(self, account_id: str) -> None:
        """Revoke every session of the account, logging it out everywhere."""
        account = self._repository.get_account(account_id)
        if account is None:
            raise ResourceNotFound("user does not exist")
        with self._repository.transaction():
            self._sessions.revoke_all(account_id)
            self._repository.write_audit_event(
                account_id=account_id,
                event_type="account.terminated",
                actor=None,
            )

    def self_update(self, account: Account, profile: ProfileInput) -> Account:
        """Replace the owner-editable profile fields of ``account``."""
        with self._repository.transaction():
            current = self._reload(account)
            current.first_name = profile.first_name
            current.last_name = profile.last_name
            current.phone = profile.phone
            current.mobile = profile.mobile
            current.locale = profile.locale or current.locale
            mail = self._email_change.start_and_track_duplication(current, profile.email)
            current = self._repository.save_account(current)
        self._email_change.send(mail)
        return current

    def self_patch(self, account: Account, fields: Mapping[str, Any]) -> Account:
        """Partially update the owner's profile; any key outside the allow-list is rejected."""
        forbidden = sorted(set(fields) - SELF_UPDATABLE_FIELDS)
        if forbidden:
            raise ValidationError(f"fields not editable on own profile: {', '.join(forbidden)}")

        updates = dict(fields)
        new_email = updates.pop("email", None)
        if new_email is not None and not isinstance(new_email, str):
            raise ValidationError("email must be a string")

        with self._repository.transaction():
            current = self._reload(account)
            self._apply_fields(current, updates)
            mail = self._email_change.start_and_track_duplication(current, new_email)
            current = self._repository.save_account(current)
        self._email_change.send(mail)
        return current

    def verify_email(self, token: str) -> Account:
        return self._email_change.verify(token)

    def update_password(self, account: Account, verification_password: str, new_password: str) -> Account:
        """Change the password after checking the current one; rotates the nonce."""
        if not account.has_local_authentication():
            raise NotAllowed(f"cannot reset password for users authenticated via '{account.source}'")
        if not self._sanitizer.verify(account, verification_password):
            raise InvalidCredential("mismatching passwords")
        if not new_password:
            raise ValidationError("new password must not be empty")

        with self._repository.transaction():
            current = self._reload(account)
            self._sanitizer.sanitize(current, new_password)
            current = self._repository.save_account(current)
            self._repository.write_audit_event(
                account_id=current.account_id,
                event_type="password.updated",
                actor=current.account_id,
            )
        return current

    def request_password_reset(self, username: str) -> None:
        self._password_reset.request_reset(username)
        PASSWORD_RESETS.labels(stage="requested").inc()

    def redeem_password_reset(self, token: str, new_password: str) -> Account:
        account = self._password_reset.redeem(token, new_password)
        PASSWORD_RESETS.labels(stage="redeemed").inc()
        return account

    def authenticate(self, username: str, password: str, client_context: ClientContext) -> str:
        """Verify a username/password pair and open a session; returns the refresh token."""
        account = self._repository.find_by_email(username.strip().lower())
        if (
            account is None
            or not account.has_local_authentication()
            or not self._sanitizer.verify(account, password)
        ):
            LOGIN_ATTEMPTS.labels(outcome="bad_credentials").inc()
            logger.warning("rejected login for %s", username)
            raise AuthenticationFailed("bad credentials")
        if account.login_disabled:
            LOGIN_ATTEMPTS.labels(outcome="disabled").inc()
            raise AuthenticationFailed("login disabled")

        refresh_token = self._sessions.login(account, client_context)
        LOGIN_ATTEMPTS.labels(outcome="success").inc()
        return refresh_token

    def renew_session(self, refresh_token: str, client_context: ClientContext) -> AccessToken:
        return self._sessions.renew(refresh_token, client_context)

    def list_sessions(self, account: Account) -> list[SessionTokenRecord]:
        return self._sessions.list_tokens(account.username)

    def revoke_session(self, account: Account, token_id: str) -> None:
        self._sessions.revoke(account.username, token_id)

    def _reload(self, account: Account) -> Account:
        current = self._repository.get_account(account.account_id)
        if current is None:
            raise ResourceNotFound("user does not exist")
        return current

    def _apply_email_change(self, existing: Account, target: Account, proposed: str | None) -> VerificationMail | None:
        """Route ``proposed`` onto ``target``; the caller saves ``target`` and sends the returned mail."""
        if not self._settings.email_validation_disabled:
            # the visible email only changes through verification
            target.email = existing.email
            target.email_to_verify = existing.email_to_verify
            target.email_verify_token = existing.email_verify_token
            target.email_verification_expires_at = existing.email_verification_expires_at
            target.last_requested_email_change = existing.last_requested_email_change
            return self._email_change.start_if_needed(target, proposed)

        if proposed is None or not proposed.strip():
            target.email = existing.email
            return None
        new_email = proposed.strip().lower()
        if new_email != existing.email:
            self._email_change.validate_email_change(existing, new_email)
        target.email = new_email
        return None

    def _apply_fields(self, account: Account, updates: Mapping[str, Any]) -> None:
        for key, value in updates.items():
            if key in _TEXT_FIELDS:
                if value is not None and not isinstance(value, str):
                    raise ValidationError(f"{key} must be a string")
                setattr(account, key, value)
            elif key == "login_disabled":
                if not isinstance(value, bool):
                    raise ValidationError("login_disabled must be a boolean")
                account.login_disabled = value
        if not account.locale:
            account.locale = self._settings.default_locale

    def _persist_with_roles(self, account: Account) -> Account:
        # columns first, then associations: clear and reattach
        roles = set(account.roles)
        saved = self._repository.save_account(account)
        self._repository.replace_roles(saved.account_id, roles)
        saved.roles = roles
        return saved
