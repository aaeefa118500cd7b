"""Credential sanitation: password hashing and nonce rotation for accounts being written."""

from __future__ import annotations

from .account import Account
from .contracts import AccountStore
from ..security.passwords import generate_nonce, hash_password, verify_password


class CredentialSanitizer:
    """Produce the committed password hash and nonce of an account about to be saved."""

    def __init__(self, repository: AccountStore) -> None:
        self._repository = repository

    def sanitize(self, account: Account, new_password: str | None) -> Account:
        """Hash ``new_password`` onto ``account`` or carry the persisted credential over.

        A new hash always comes with a new nonce. Without a usable password
        the persisted hash and nonce are inherited unchanged, and an account
        that was never persisted keeps both unset. Accounts whose persisted
        record (or, before the first write, the account itself) uses an
        external authentication source never receive a hash.
        """
        existing = None
        if account.account_id is not None:
            existing = self._repository.get_account(account.account_id)

        local = existing.has_local_authentication() if existing else account.has_local_authentication()
        if new_password and local:
            account.nonce = generate_nonce()
            account.password_hash = hash_password(new_password)
        else:
            account.password_hash = existing.password_hash if existing else None

        if account.nonce is None:
            account.nonce = existing.nonce if existing else None
        return account

    def verify(self, account: Account, password: str) -> bool:
        return verify_password(password, account.password_hash)
