"""Prometheus counters for the client runtime.

Labels are deliberately coarse: event kinds and component names only, never
cache keys, resource ids or payload content.
"""

from __future__ import annotations

from prometheus_client import Counter

CACHE_EVENTS_TOTAL = Counter(
    "freshline_cache_events_total",
    "TTL cache operations by outcome.",
    labelnames=("event",),
)

CONNECTION_EVENTS_TOTAL = Counter(
    "freshline_connection_events_total",
    "Connection manager lifecycle events.",
    labelnames=("event",),
)

INBOUND_MESSAGES_TOTAL = Counter(
    "freshline_inbound_messages_total",
    "Inbound realtime messages by dispatch outcome.",
    labelnames=("outcome",),
)

SHAPER_DELIVERIES_TOTAL = Counter(
    "freshline_shaper_deliveries_total",
    "Emissions made by rate shapers.",
    labelnames=("shaper",),
)

SHAPER_DROPPED_TOTAL = Counter(
    "freshline_shaper_dropped_total",
    "Items discarded by rate shapers (superseded or over the buffer bound).",
    labelnames=("shaper",),
)

POLICY_DECISIONS_TOTAL = Counter(
    "freshline_policy_decisions_total",
    "Access policy decisions.",
    labelnames=("decision",),
)

REMOTE_REQUESTS_TOTAL = Counter(
    "freshline_remote_requests_total",
    "Remote store requests issued by the data facade.",
    labelnames=("operation", "outcome"),
)


__all__ = [
    "CACHE_EVENTS_TOTAL",
    "CONNECTION_EVENTS_TOTAL",
    "INBOUND_MESSAGES_TOTAL",
    "POLICY_DECISIONS_TOTAL",
    "REMOTE_REQUESTS_TOTAL",
    "SHAPER_DELIVERIES_TOTAL",
    "SHAPER_DROPPED_TOTAL",
]
