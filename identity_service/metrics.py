"""Prometheus collectors for the authentication workflows."""

from __future__ import annotations

from prometheus_client import Counter

AUTH_EVENTS = Counter(
    "identity_auth_events_total",
    "Authentication workflow outcomes by event.",
    ["event"],
)

OTP_VERIFICATIONS = Counter(
    "identity_otp_verifications_total",
    "OTP verification attempts by result code.",
    ["result"],
)

NOTIFICATION_FAILURES = Counter(
    "identity_notification_failures_total",
    "Background notifications that could not be delivered.",
    ["kind"],
)
