"""
Prometheus Metrics for Scribe - Observability instrumentation.

Follows RED methodology: Rate, Errors, Duration, plus the cache and
rate-limit counters that show whether the request-shaping layer pays off.

CARDINALITY:
    Labels create separate time series. Keep label values to small fixed
    sets (endpoint, status, outcome); never label by client identity.
"""

from prometheus_client import Counter, Histogram, Gauge, REGISTRY
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# RED METRICS (Rate, Errors, Duration)
# =============================================================================

scribe_requests_total = Counter(
    "scribe_requests_total",
    "Total HTTP requests to the Scribe API",
    labelnames=["endpoint", "status"],
)

scribe_request_duration_seconds = Histogram(
    "scribe_request_duration_seconds",
    "HTTP request latency in seconds (time to first byte for streams)",
    labelnames=["endpoint"],
    buckets=[
        0.005,  # cache replay
        0.01,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        float("inf")
    ]
)


# =============================================================================
# CACHE METRICS
# =============================================================================

# result: "hit" (replayed from memo) or "miss" (generated live)
scribe_response_cache_total = Counter(
    "scribe_response_cache_total",
    "AI response cache lookups by result",
    labelnames=["result"],
)

# Only successful, complete generations are stored.
scribe_response_cache_writes_total = Counter(
    "scribe_response_cache_writes_total",
    "AI responses written to the cache",
)


# =============================================================================
# RATE LIMIT METRICS
# =============================================================================

# outcome: allowed/denied; source: local (decision cache) / upstream (Redis)
scribe_rate_limit_decisions_total = Counter(
    "scribe_rate_limit_decisions_total",
    "Rate limit decisions by outcome and source",
    labelnames=["outcome", "source"],
)

scribe_rate_limiter_errors_total = Counter(
    "scribe_rate_limiter_errors_total",
    "Upstream rate limiter failures",
    labelnames=["reason"],
)


# =============================================================================
# GENERATION METRICS
# =============================================================================

# stage: "start" (before the first chunk) or "stream" (after output began)
scribe_generation_failures_total = Counter(
    "scribe_generation_failures_total",
    "Generation failures by stage",
    labelnames=["stage"],
)

scribe_active_streams = Gauge(
    "scribe_active_streams",
    "Number of AI responses currently streaming to clients",
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def record_request(endpoint: str, status: int, duration_seconds: float) -> None:
    """Record request metrics (counter + duration histogram)."""
    scribe_requests_total.labels(endpoint=endpoint, status=str(status)).inc()
    scribe_request_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)


def record_cache_lookup(hit: bool) -> None:
    scribe_response_cache_total.labels(result="hit" if hit else "miss").inc()


def record_cache_write() -> None:
    scribe_response_cache_writes_total.inc()


def record_rate_limit_decision(allowed: bool, source: str) -> None:
    """
    Record a rate-limit decision.

    Args:
        allowed: Decision outcome
        source: "local" or "upstream"
    """
    if source not in ("local", "upstream"):
        logger.warning(f"Invalid rate limit decision source: {source}")
        return

    outcome = "allowed" if allowed else "denied"
    scribe_rate_limit_decisions_total.labels(outcome=outcome, source=source).inc()


def record_limiter_error(reason: str) -> None:
    scribe_rate_limiter_errors_total.labels(reason=reason).inc()


def record_generation_failure(stage: str) -> None:
    if stage not in ("start", "stream"):
        logger.warning(f"Invalid generation failure stage: {stage}")
        return

    scribe_generation_failures_total.labels(stage=stage).inc()


def increment_active_streams() -> None:
    scribe_active_streams.inc()


def decrement_active_streams() -> None:
    scribe_active_streams.dec()


__all__ = [
    "scribe_requests_total",
    "scribe_request_duration_seconds",
    "scribe_response_cache_total",
    "scribe_response_cache_writes_total",
    "scribe_rate_limit_decisions_total",
    "scribe_rate_limiter_errors_total",
    "scribe_generation_failures_total",
    "scribe_active_streams",
    "record_request",
    "record_cache_lookup",
    "record_cache_write",
    "record_rate_limit_decision",
    "record_limiter_error",
    "record_generation_failure",
    "increment_active_streams",
    "decrement_active_streams",
    "REGISTRY",
]
