"""
Integration test fixtures.

These fixtures connect to a real Kafka broker (e.g. the docker-compose stack).
Set INTEGRATION_KAFKA_BOOTSTRAP_SERVERS to point at it (default localhost:9092).
Tests are skipped when no broker answers.
"""

import os
import uuid

import pytest
from kafka import KafkaAdminClient
from kafka.errors import KafkaError

from churn_stream.core.config import ConsumerSettings, KafkaSettings
from churn_stream.core.retry import RetryPolicy
from churn_stream.streaming.broker import KafkaBroker
from churn_stream.streaming.topics import TopicManager, default_topic_specs

# Read at import: the unit-test environment fixture overrides KAFKA_* per test
BOOTSTRAP_SERVERS = os.getenv("INTEGRATION_KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")


# =============================================================================
# SKIP CONDITIONS
# =============================================================================

def is_kafka_available() -> bool:
    """Check if a Kafka broker is accessible."""
    try:
        admin = KafkaAdminClient(
            bootstrap_servers=BOOTSTRAP_SERVERS,
            request_timeout_ms=3000,
            api_version_auto_timeout_ms=3000,
        )
    except KafkaError:
        return False
    admin.close()
    return True


@pytest.fixture(scope="session")
def kafka_available() -> bool:
    return is_kafka_available()


@pytest.fixture(autouse=True)
def requires_kafka(kafka_available):
    if not kafka_available:
        pytest.skip(f"Kafka is not available at {BOOTSTRAP_SERVERS}")


# =============================================================================
# KAFKA FIXTURES
# =============================================================================

@pytest.fixture
def live_kafka_settings() -> KafkaSettings:
    """Settings pointing at per-test topics so runs never share state."""
    suffix = uuid.uuid4().hex[:8]
    return KafkaSettings(
        bootstrap_servers=BOOTSTRAP_SERVERS,
        input_topic=f"it_churn_{suffix}",
        scored_topic=f"it_churn_{suffix}_scored",
    )


@pytest.fixture
def live_consumer_settings() -> ConsumerSettings:
    return ConsumerSettings(
        group_id=f"it-scoring-{uuid.uuid4().hex[:8]}",
        poll_timeout=1.0,
        quiescence_timeout=5.0,
        poll_interval=0.5,
    )


@pytest.fixture
def live_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=0.2, max_delay=2.0, jitter=0.1)


@pytest.fixture
def live_broker(live_kafka_settings, live_retry_policy):
    """Connected KafkaBroker with the per-test topics created, deleted afterwards."""
    with KafkaBroker(live_kafka_settings) as broker:
        manager = TopicManager(broker, live_retry_policy)
        manager.ensure_defaults(live_kafka_settings)
        yield broker
        for spec in default_topic_specs(live_kafka_settings):
            manager.delete(spec.name)
