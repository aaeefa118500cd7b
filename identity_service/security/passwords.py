"""Password hashing and opaque token helpers."""

from __future__ import annotations

import base64
import secrets
import uuid

from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Return a salted one-way hash of ``password``."""
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    """Return ``True`` when ``password`` matches the stored hash."""
    if not hashed:
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        # unrecognised or corrupt hash
        return False


def generate_nonce() -> str:
    """Return a short opaque nonce bound into every issued session token."""
    return uuid.uuid4().hex[:8]


def generate_single_use_token() -> str:
    """Return a fresh password-reset or email-verification token."""
    return str(uuid.uuid4())


def generate_random_password() -> str:
    """Return an unguessable password for accounts created without one."""
    return base64.b64encode(secrets.token_bytes(128)).decode("ascii")
