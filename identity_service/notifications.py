"""Notifier implementations and the failure-tolerant dispatch helper."""

from __future__ import annotations

import logging
from typing import Callable

from .domain.contracts import Notifier

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default notifier used when no mail transport is wired in.

    Tokens are not written to the log; only the recipient and message kind.
    """

    def send_reset_token(self, email: str, token: str, locale: str) -> None:
        logger.info("password reset mail queued for %s (locale=%s)", email, locale)

    def send_new_account(self, email: str, token: str, locale: str) -> None:
        logger.info("new account mail queued for %s (locale=%s)", email, locale)

    def send_email_verification(self, email: str, token: str, locale: str) -> None:
        logger.info("email verification mail queued for %s (locale=%s)", email, locale)


def dispatch(send: Callable[[str, str, str], None], email: str, token: str, locale: str) -> bool:
    """Invoke a notifier method, logging instead of raising on failure.

    Returns ``True`` when the notifier accepted the message.
    """
    try:
        send(email, token, locale)
    except Exception as exc:
        logger.error("failed to send %s mail to %s: %s", getattr(send, "__name__", "notification"), email, exc)
        return False
    return True


__all__ = ["LoggingNotifier", "Notifier", "dispatch"]
