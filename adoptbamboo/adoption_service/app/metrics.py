"""Prometheus metrics for the adoption service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

_TRIGGER_LABELS: Final = ("callback", "poll", "success_visit", "sweep", "manual")

# Reconciliation ---------------------------------------------------------------------------
ADOPTION_RECONCILIATION_TOTAL: Final = Counter(
    "adoption_reconciliation_total",
    "Reconciliation attempts grouped by trigger and outcome.",
    labelnames=("trigger", "outcome"),
)

ADOPTION_RECONCILIATION_ERRORS_TOTAL: Final = Counter(
    "adoption_reconciliation_errors_total",
    "Reconciliation attempts that failed with a retryable error.",
    labelnames=("trigger", "reason"),
)

ADOPTION_LOCATION_FULL_TOTAL: Final = Counter(
    "adoption_location_full_total",
    "Payment creations rejected because the chosen location reached capacity.",
)

# Gateway ----------------------------------------------------------------------------------
GATEWAY_REQUESTS_TOTAL: Final = Counter(
    "adoption_gateway_requests_total",
    "Payment gateway calls grouped by operation and outcome.",
    labelnames=("operation", "outcome"),
)

GATEWAY_LATENCY_SECONDS: Final = Histogram(
    "adoption_gateway_latency_seconds",
    "Round-trip time of payment gateway calls.",
    labelnames=("operation",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20),
)

GATEWAY_STATUS_CACHE_EVENTS_TOTAL: Final = Counter(
    "adoption_gateway_status_cache_events_total",
    "Gateway status cache hits, misses, writes and errors.",
    labelnames=("event",),
)

# Payments ---------------------------------------------------------------------------------
PAYMENT_STATUS_TRANSITIONS_TOTAL: Final = Counter(
    "adoption_payment_status_transitions_total",
    "Payment status changes applied from gateway reports.",
    labelnames=("status",),
)

PAYMENT_STATUS_CONFLICTS_TOTAL: Final = Counter(
    "adoption_payment_status_conflicts_total",
    "Gateway reports ignored because the payment was already terminal.",
    labelnames=("current", "reported"),
)

# Growth -----------------------------------------------------------------------------------
GROWTH_BACKFILL_RECORDS_TOTAL: Final = Counter(
    "adoption_growth_backfill_records_total",
    "Growth records generated by timeline backfill.",
)


def normalise_trigger(raw_trigger: str) -> str:
    """Return a bounded label value for trigger-labelled counters."""

    trigger = (raw_trigger or "manual").strip().lower().replace("-", "_")
    if trigger not in _TRIGGER_LABELS:
        return "manual"
    return trigger
