"""Prometheus metrics definitions.

All metrics for the speech gateway.
Exposed via /metrics endpoint on the API server.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- Synthesis metrics ---

synthesis_requests_total = Counter(
    "speechgw_synthesis_requests_total",
    "Total routed synthesis requests",
    ["engine", "mode", "status"],  # mode: batch, stream, timestamps
)

synthesis_latency_ms = Histogram(
    "speechgw_synthesis_latency_ms",
    "Adapter synthesis latency in milliseconds",
    ["engine", "mode"],
    buckets=[50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000],
)

synthesized_characters_total = Counter(
    "speechgw_synthesized_characters_total",
    "Characters sent to engines",
    ["engine"],
)

# --- Admission metrics ---

admissions_total = Counter(
    "speechgw_admissions_total",
    "Admission decisions by outcome",
    ["outcome"],  # admitted, bypass, admin, unauthorized, forbidden, rate_limited, unavailable
)

rate_limit_exceeded_total = Counter(
    "speechgw_rate_limit_exceeded_total",
    "Requests rejected by the per-key rate limiter",
)

usage_increment_failures_total = Counter(
    "speechgw_usage_increment_failures_total",
    "Background key usage increments that failed",
)

# --- Engine metrics ---

engine_initializations_total = Counter(
    "speechgw_engine_initializations_total",
    "Engine adapter constructions by outcome",
    ["engine", "outcome"],  # ready, error
)

engines_cached = Gauge(
    "speechgw_engines_cached",
    "Number of engine adapters held in the registry cache",
)

engine_cache_hits_total = Counter(
    "speechgw_engine_cache_hits_total",
    "Synthesis results served from an adapter's phrase cache",
    ["engine"],
)

engine_cache_misses_total = Counter(
    "speechgw_engine_cache_misses_total",
    "Synthesis requests that missed an adapter's phrase cache",
    ["engine"],
)

vendor_api_errors_total = Counter(
    "speechgw_vendor_api_errors_total",
    "Vendor HTTP API errors",
    ["engine", "status"],
)

vendor_circuit_breaker_state = Gauge(
    "speechgw_vendor_circuit_breaker_state",
    "Vendor API circuit breaker state (0=closed, 1=open)",
    ["engine"],
)

# --- Streaming metrics ---

websocket_sessions_active = Gauge(
    "speechgw_websocket_sessions_active",
    "Number of open WebSocket streaming connections",
)

websocket_exchanges_total = Counter(
    "speechgw_websocket_exchanges_total",
    "WebSocket speak exchanges by outcome",
    ["outcome"],  # completed, failed, cancelled
)

# --- Usage recorder metrics ---

usage_buffer_pending = Gauge(
    "speechgw_usage_buffer_pending",
    "Usage records waiting to be flushed",
)

usage_records_dropped_total = Counter(
    "speechgw_usage_records_dropped_total",
    "Usage records dropped because the buffer was full",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
