"""Email changes staged behind a verification token."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .account import Account
from .contracts import AccountStore, Notifier
from ..errors import DuplicateResource, InvalidCredential
from ..notifications import dispatch
from ..security.passwords import generate_single_use_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VerificationMail:
    """Verification message to send once the staged change is committed."""

    email: str
    token: str
    locale: str


class EmailChangeVerificationFlow:
    """Record a pending email address and only apply it once the owner confirms it.

    Staging only mutates the account handed in; the caller saves it and, after
    its transaction commits, passes the returned :class:`VerificationMail` to
    :meth:`send`.
    """

    def __init__(
        self,
        repository: AccountStore,
        notifier: Notifier,
        *,
        token_ttl: timedelta,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._token_ttl = token_ttl

    def start_if_needed(self, account: Account, proposed_email: str | None) -> VerificationMail | None:
        """Stage ``proposed_email`` on ``account`` unless it is absent or unchanged.

        A later request overwrites any earlier pending change.
        """
        if not self._is_change(account, proposed_email):
            return None
        return self._stage(account, proposed_email.strip().lower())

    def start_and_track_duplication(self, account: Account, proposed_email: str | None) -> VerificationMail | None:
        """Like :meth:`start_if_needed` but report duplicates to the caller.

        Raises ``DuplicateResource`` when the address belongs to another
        account or when the same change is already pending and unexpired.
        """
        if not self._is_change(account, proposed_email):
            return None
        new_email = proposed_email.strip().lower()
        self.validate_email_change(account, new_email)
        if account.email_to_verify == new_email and not self._expired(account):
            raise DuplicateResource(f"a change to '{new_email}' is already awaiting verification")
        return self._stage(account, new_email)

    def send(self, mail: VerificationMail | None) -> None:
        if mail is not None:
            dispatch(self._notifier.send_email_verification, mail.email, mail.token, mail.locale)

    def validate_email_change(self, account: Account, new_email: str) -> None:
        owner = self._repository.find_by_email(new_email.lower())
        if owner is not None and owner.account_id != account.account_id:
            raise DuplicateResource(f"email '{new_email}' is already in use")

    def verify(self, token: str) -> Account:
        """Apply the pending email change identified by ``token``."""
        account = self._repository.find_by_email_verify_token(token)
        if account is None or account.email_to_verify is None:
            raise InvalidCredential("invalid email verification token")
        if self._expired(account):
            self._clear(account)
            self._repository.save_account(account)
            raise InvalidCredential("email verification token expired")

        with self._repository.transaction():
            self.validate_email_change(account, account.email_to_verify)
            previous = account.email
            account.email = account.email_to_verify
            self._clear(account)
            self._repository.save_account(account)
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="email.verified",
                actor=account.account_id,
                metadata={"previous_email": previous, "email": account.email},
            )
        logger.info("email change verified for account %s", account.account_id)
        return account

    @staticmethod
    def _is_change(account: Account, proposed_email: str | None) -> bool:
        if proposed_email is None or not proposed_email.strip():
            return False
        return proposed_email.strip().lower() != (account.email or "").lower()

    def _stage(self, account: Account, new_email: str) -> VerificationMail:
        now = datetime.now(timezone.utc)
        token = generate_single_use_token()
        account.email_to_verify = new_email
        account.email_verify_token = token
        account.email_verification_expires_at = now + self._token_ttl
        account.last_requested_email_change = now
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="email.change_requested",
            actor=account.account_id,
            metadata={"email_to_verify": new_email},
        )
        return VerificationMail(email=new_email, token=token, locale=account.locale)

    @staticmethod
    def _expired(account: Account) -> bool:
        expires_at = account.email_verification_expires_at
        return expires_at is None or expires_at <= datetime.now(timezone.utc)

    @staticmethod
    def _clear(account: Account) -> None:
        account.email_to_verify = None
        account.email_verify_token = None
        account.email_verification_expires_at = None
