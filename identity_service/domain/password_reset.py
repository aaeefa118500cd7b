"""Single-use password reset tokens."""

from __future__ import annotations

import logging

from .account import Account
from .contracts import AccountStore, Notifier
from .credentials import CredentialSanitizer
from ..errors import InvalidCredential, NotAllowed, ResourceNotFound, ValidationError
from ..notifications import dispatch
from ..security.passwords import generate_single_use_token

logger = logging.getLogger(__name__)


class PasswordResetFlow:
    """Issue reset tokens and redeem them exactly once."""

    def __init__(
        self,
        repository: AccountStore,
        sanitizer: CredentialSanitizer,
        notifier: Notifier,
    ) -> None:
        self._repository = repository
        self._sanitizer = sanitizer
        self._notifier = notifier

    def request_reset(self, username: str) -> None:
        """Store a fresh reset token on the account and mail it to the owner."""
        account = self._repository.find_by_email(username.lower())
        if account is None:
            raise ResourceNotFound(f"user '{username}' not found")
        if not account.has_local_authentication():
            raise NotAllowed(f"cannot reset password for users authenticated via '{account.source}'")

        token = generate_single_use_token()
        with self._repository.transaction():
            account.password_reset_token = token
            self._repository.save_account(account)
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="password.reset_requested",
                actor=account.account_id,
            )
        dispatch(self._notifier.send_reset_token, account.email, token, account.locale)

    def redeem(self, token: str, new_password: str) -> Account:
        """Consume ``token`` and set ``new_password``.

        The token is cleared atomically by the lookup itself, so concurrent
        redemptions of the same token have at most one winner.
        """
        if not new_password:
            raise ValidationError("new password must not be empty")
        with self._repository.transaction():
            account = self._repository.claim_password_reset_token(token)
            if account is None:
                raise InvalidCredential("invalid reset token")
            self.set_new_password_and_clear_token(account, new_password)
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="password.reset",
                actor=account.account_id,
            )
        logger.info("password reset completed for account %s", account.account_id)
        return account

    def set_new_password_and_clear_token(self, account: Account, new_password: str) -> Account:
        self._sanitizer.sanitize(account, new_password)
        account.login_disabled = False
        account.password_reset_token = None
        return self._repository.save_account(account)
