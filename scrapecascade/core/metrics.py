from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Request outcomes
# ---------------------------------------------------------------------------
cascade_requests_total = Counter(
    "cascade_requests_total",
    "Total fetch requests by outcome",
    ["outcome"],  # success, cached, stale, deduped, rate_limited, budget_exceeded, provider_unavailable, cascade_exhausted
)

# ---------------------------------------------------------------------------
# Provider attempts
# ---------------------------------------------------------------------------
cascade_provider_attempts_total = Counter(
    "cascade_provider_attempts_total",
    "Provider attempts by provider and result",
    ["provider", "result"],
)
cascade_attempt_duration_seconds = Histogram(
    "cascade_attempt_duration_seconds",
    "Duration of a single provider attempt in seconds",
    ["provider"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)
cascade_circuit_open = Gauge(
    "cascade_circuit_open",
    "1 while a provider is excluded by its circuit breaker",
    ["provider"],
)

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
cascade_cache_events_total = Counter(
    "cascade_cache_events_total",
    "Response cache events",
    ["event"],  # hit, miss, stale, evict
)

# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------
cascade_spend_usd = Gauge(
    "cascade_spend_usd",
    "Realized spend in the current budget window",
    ["window"],
)
cascade_savings_usd_total = Counter(
    "cascade_savings_usd_total",
    "Spend avoided by cache hits and request coalescing",
    ["source"],  # cache, dedup
)
cascade_budget_alerts_total = Counter(
    "cascade_budget_alerts_total",
    "Budget threshold crossings",
    ["window", "threshold"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
