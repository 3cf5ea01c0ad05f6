"""Prometheus metric definitions and helpers for the purchase workflow."""

from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Histogram

PURCHASE_ATTEMPTS_TOTAL = Counter(
    "purchase_attempts_total",
    "Total number of finished purchase attempts partitioned by final state.",
    ["outcome"],
)

PURCHASE_TRANSITIONS_TOTAL = Counter(
    "purchase_transitions_total",
    "Total number of purchase state transitions partitioned by target state.",
    ["state"],
)

VERIFICATION_FAILURES_TOTAL = Counter(
    "verification_failures_total",
    "Payments captured by the gateway whose backend verification failed.",
)

ENTITLEMENT_REFRESH_TOTAL = Counter(
    "entitlement_refresh_total",
    "Entitlement snapshot refreshes partitioned by status.",
    ["status"],
)

BACKEND_REQUEST_DURATION_SECONDS = Histogram(
    "backend_request_duration_seconds",
    "Histogram of vendor backend request latency in seconds partitioned by endpoint.",
    ["endpoint"],
)


def record_purchase_transition(state: str) -> None:
    """Increment the transition counter for the state just entered."""

    PURCHASE_TRANSITIONS_TOTAL.labels(state=state).inc()


def record_purchase_outcome(outcome: str) -> None:
    """Increment counters for a purchase attempt that reached a terminal state."""

    PURCHASE_ATTEMPTS_TOTAL.labels(outcome=outcome).inc()


def record_verification_failure() -> None:
    VERIFICATION_FAILURES_TOTAL.inc()


def record_entitlement_refresh(status: str) -> None:
    ENTITLEMENT_REFRESH_TOTAL.labels(status=status).inc()


def record_backend_request(endpoint: str, duration_seconds: Optional[float]) -> None:
    """Observe backend latency when a duration is known."""

    if duration_seconds is not None:
        BACKEND_REQUEST_DURATION_SECONDS.labels(endpoint=endpoint).observe(duration_seconds)
