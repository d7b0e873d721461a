"""Prometheus instruments for account lifecycle activity."""

from __future__ import annotations

from prometheus_client import Counter

LIFECYCLE_EVENTS = Counter(
    "account_lifecycle_events_total",
    "Account lifecycle mutations recorded in the audit log.",
    ["event_type"],
)
