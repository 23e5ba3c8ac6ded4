"""
Core Monitoring Metrics
=======================

Prometheus metrics for the producer, consumers and scoring engine.

This module provides:
1. Safe metric creation helpers (avoid duplicate registration errors)
2. Standard buckets
3. Pipeline metric definitions
4. Safe update helpers that never raise into the hot path

Usage:
    from churn_stream.core.monitoring import (
        messages_consumed_counter,
        safe_increment,
    )

    safe_increment(messages_consumed_counter, mode="batch", outcome="processed")
"""

import logging
import os
import time
from typing import List, Optional

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_METRICS", "true").lower() == "true"


# =============================================================================
# SAFE METRIC CREATION HELPERS
# =============================================================================

def get_or_create_counter(
    name: str,
    description: str,
    labelnames: List[str],
) -> Optional[Counter]:
    """
    Get existing counter or create new one.
    Safely handles duplicate registration errors from Prometheus.
    """
    if not PROMETHEUS_ENABLED:
        return None
    try:
        return Counter(name, description, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def get_or_create_histogram(
    name: str,
    description: str,
    labelnames: List[str],
    buckets: Optional[List[float]] = None,
) -> Optional[Histogram]:
    """
    Get existing histogram or create new one.
    Safely handles duplicate registration errors from Prometheus.
    """
    if not PROMETHEUS_ENABLED:
        return None
    try:
        if buckets:
            return Histogram(name, description, labelnames, buckets=buckets)
        return Histogram(name, description, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def get_or_create_gauge(
    name: str,
    description: str,
    labelnames: List[str],
) -> Optional[Gauge]:
    """
    Get existing gauge or create new one.
    Safely handles duplicate registration errors from Prometheus.
    """
    if not PROMETHEUS_ENABLED:
        return None
    try:
        return Gauge(name, description, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# =============================================================================
# STANDARD BUCKETS
# =============================================================================

# Latency buckets (in seconds)
LATENCY_BUCKETS_FAST = [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
LATENCY_BUCKETS_MEDIUM = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]

# Score/probability buckets
PROBABILITY_BUCKETS = [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]


# =============================================================================
# PIPELINE METRICS
# =============================================================================

events_produced_counter = get_or_create_counter(
    "churn_events_produced_total",
    "Customer events published to the input topic",
    ["mode", "status"],
)

messages_consumed_counter = get_or_create_counter(
    "churn_messages_consumed_total",
    "Input messages handled by a consumer, by outcome",
    ["mode", "outcome"],
)

publish_retry_counter = get_or_create_counter(
    "churn_publish_retries_total",
    "Publish attempts that were retried",
    ["topic"],
)

scoring_latency_histogram = get_or_create_histogram(
    "churn_scoring_latency_seconds",
    "Time to validate and score one event",
    ["model_version"],
    buckets=LATENCY_BUCKETS_FAST,
)

publish_latency_histogram = get_or_create_histogram(
    "churn_publish_latency_seconds",
    "Time from send to broker acknowledgement",
    ["topic"],
    buckets=LATENCY_BUCKETS_MEDIUM,
)

churn_probability_histogram = get_or_create_histogram(
    "churn_probability",
    "Distribution of scored churn probabilities",
    ["model_version"],
    buckets=PROBABILITY_BUCKETS,
)

committed_offset_gauge = get_or_create_gauge(
    "churn_committed_offset",
    "Last committed offset per input partition",
    ["topic", "partition"],
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def safe_observe(histogram: Optional[Histogram], value: float, **labels):
    """Safely observe a histogram value."""
    if histogram is not None:
        try:
            histogram.labels(**labels).observe(value)
        except Exception as e:
            logger.debug(f"Failed to observe histogram: {e}")


def safe_increment(counter: Optional[Counter], amount: int = 1, **labels):
    """Safely increment a counter."""
    if counter is not None:
        try:
            counter.labels(**labels).inc(amount)
        except Exception as e:
            logger.debug(f"Failed to increment counter: {e}")


def safe_set_gauge(gauge: Optional[Gauge], value: float, **labels):
    """Safely set a gauge value."""
    if gauge is not None:
        try:
            gauge.labels(**labels).set(value)
        except Exception as e:
            logger.debug(f"Failed to set gauge: {e}")


class Timer:
    """Context manager measuring elapsed seconds into a histogram."""

    def __init__(self, histogram: Optional[Histogram] = None, **labels):
        self.histogram = histogram
        self.labels = labels
        self.start_time = None
        self.elapsed = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.perf_counter() - self.start_time
        if exc_type is None:
            safe_observe(self.histogram, self.elapsed, **self.labels)
        return False


def start_metrics_server(port: int) -> bool:
    """Expose /metrics over HTTP. Returns False when metrics are disabled."""
    if not PROMETHEUS_ENABLED:
        logger.info("Prometheus metrics disabled, not starting metrics server")
        return False
    start_http_server(port)
    logger.info(f"Prometheus metrics available on :{port}/metrics")
    return True
