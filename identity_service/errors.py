"""Error taxonomy shared by the domain services and the HTTP layer.

Every error derives from :class:`IdentityError`, itself a ``ValueError`` so
callers written against plain value errors keep working. ``status_code`` is
the HTTP status the API layer responds with.
"""

from __future__ import annotations


class IdentityError(ValueError):
    """Base class for all identity workflow failures."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ResourceNotFound(IdentityError):
    """Unknown account identifier or username."""

    status_code = 404


class DuplicateResource(IdentityError):
    """Email already in use, or an identical email change is already pending."""

    status_code = 409


class NotAllowed(IdentityError):
    """Operation forbidden by an invariant or by the account's authentication source."""

    status_code = 403


class AdminInvariantViolation(NotAllowed):
    """Mutation would leave the system without any administrator."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "cannot remove the last administrator; at least one admin account must remain"
        )


class InvalidCredential(IdentityError):
    """Wrong password, or an unknown/expired reset or verification token."""

    status_code = 401


class AuthenticationFailed(InvalidCredential):
    """Login or session renewal rejected."""


class ValidationError(IdentityError):
    """Malformed payload, e.g. a roles field of an unsupported shape."""

    status_code = 400


class NotificationError(Exception):
    """Raised by notifiers when an outbound message could not be dispatched."""
