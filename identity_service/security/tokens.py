"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import hashlib
import secrets
import time
from typing import Any

import jwt

from ..config import get_settings


def issue_access_token(
    *,
    subject: str,
    account_id: str,
    nonce: str | None,
    session_id: str,
    roles: list[str] | None = None,
) -> tuple[str, int]:
    """Create a signed JWT representing an authenticated account.

    Parameters
    ----------
    subject:
        Username (email) embedded in the token `sub` claim.
    account_id:
        Stable account identifier, used to reload the account on each request.
    nonce:
        The account's credential nonce at issuance; rotating it on the account
        invalidates every token carrying the old value.
    session_id:
        Identifier of the refresh-token session that minted this access token.
    roles:
        Role names granted to the account at issuance.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "uid": account_id,
        "nonce": nonce,
        "sid": session_id,
        "roles": sorted(roles or []),
        "iat": now,
        "exp": now + expires_in,
    }

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "sub", "uid", "sid"]},
    )


def generate_refresh_token() -> tuple[str, str]:
    """Generate a refresh token string and its SHA-256 hash."""
    token = secrets.token_urlsafe(48)
    return token, hash_refresh_token(token)


def hash_refresh_token(token: str) -> str:
    """Return the SHA-256 hex digest for a refresh token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
