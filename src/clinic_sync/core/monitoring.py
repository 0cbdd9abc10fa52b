"""Prometheus metrics for sync passes, rate limiting and retries.

Provides:
- Sync pass / record / conflict counters and pass duration histogram
- Rate limiter decision counter
- Integration error and retry lifecycle counters
- get_metrics_response(): /metrics exposition
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.responses import Response

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_passes_total = Counter(
    "sync_passes_total",
    "Completed sync passes",
    ["provider", "status"],
)

sync_pass_duration_seconds = Histogram(
    "sync_pass_duration_seconds",
    "Sync pass duration in seconds",
    ["provider"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

sync_records_total = Counter(
    "sync_records_total",
    "Records handled by sync passes",
    ["provider", "data_type", "outcome"],
)

sync_conflicts_total = Counter(
    "sync_conflicts_total",
    "Conflicts detected during sync passes",
    ["provider", "policy"],
)

# ── Resilience Metrics ───────────────────────────────────────────────────────

rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["allowed"],
)

integration_errors_total = Counter(
    "integration_errors_total",
    "Classified integration errors",
    ["service", "kind"],
)

retry_events_total = Counter(
    "retry_events_total",
    "Retry coordinator lifecycle events",
    ["service", "outcome"],
)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
