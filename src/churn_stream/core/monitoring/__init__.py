"""
Core Monitoring Module
======================

Prometheus metrics for the scoring stream.

Usage:
    from churn_stream.core.monitoring import (
        events_produced_counter,
        safe_increment,
        Timer,
    )
"""

from churn_stream.core.monitoring.metrics import (
    LATENCY_BUCKETS_FAST,
    LATENCY_BUCKETS_MEDIUM,
    PROBABILITY_BUCKETS,
    PROMETHEUS_ENABLED,
    Timer,
    churn_probability_histogram,
    committed_offset_gauge,
    events_produced_counter,
    get_or_create_counter,
    get_or_create_gauge,
    get_or_create_histogram,
    messages_consumed_counter,
    publish_latency_histogram,
    publish_retry_counter,
    safe_increment,
    safe_observe,
    safe_set_gauge,
    scoring_latency_histogram,
    start_metrics_server,
)

__all__ = [
    "PROMETHEUS_ENABLED",
    # Helpers
    "get_or_create_counter",
    "get_or_create_histogram",
    "get_or_create_gauge",
    # Buckets
    "LATENCY_BUCKETS_FAST",
    "LATENCY_BUCKETS_MEDIUM",
    "PROBABILITY_BUCKETS",
    # Metrics
    "events_produced_counter",
    "messages_consumed_counter",
    "publish_retry_counter",
    "scoring_latency_histogram",
    "publish_latency_histogram",
    "churn_probability_histogram",
    "committed_offset_gauge",
    # Utilities
    "safe_observe",
    "safe_increment",
    "safe_set_gauge",
    "Timer",
    "start_metrics_server",
]
