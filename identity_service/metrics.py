"""Prometheus counters for authentication workflows."""

from __future__ import annotations

from prometheus_client import Counter

LOGIN_ATTEMPTS = Counter(
    "identity_login_attempts_total",
    "Password logins by outcome.",
    ["outcome"],
)

SESSION_RENEWALS = Counter(
    "identity_session_renewals_total",
    "Access token renewals by outcome.",
    ["outcome"],
)

PASSWORD_RESETS = Counter(
    "identity_password_resets_total",
    "Password reset requests and redemptions.",
    ["stage"],
)
