"""Prometheus counters for security-relevant identity events."""

from __future__ import annotations

from prometheus_client import Counter

LOGIN_ATTEMPTS = Counter(
    "identity_login_attempts_total",
    "Login attempts grouped by outcome.",
    ["outcome"],
)
ACCOUNT_LOCKOUTS = Counter(
    "identity_account_lockouts_total",
    "Accounts locked after repeated login failures.",
)
NOTIFICATION_FAILURES = Counter(
    "identity_notification_failures_total",
    "Notifier deliveries that failed or timed out.",
    ["channel"],
)
EVENT_PUBLISH_FAILURES = Counter(
    "identity_event_publish_failures_total",
    "Domain events whose publication outcome is unknown.",
    ["topic"],
)
REFRESH_TOKEN_REUSE = Counter(
    "identity_refresh_token_reuse_total",
    "Rotated refresh tokens presented again (family revoked).",
)
HASH_THROTTLED = Counter(
    "identity_hash_throttled_total",
    "Password hash operations shed because the worker budget was exhausted.",
)
STORE_CONFLICTS = Counter(
    "identity_store_conflicts_total",
    "Optimistic-concurrency conflicts observed on account writes.",
)
