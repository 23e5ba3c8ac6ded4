"""
Shared test fixtures for the churn scoring stream.
"""

import os
import zlib
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

import numpy as np
import pytest
from kafka.errors import (
    KafkaConnectionError,
    KafkaTimeoutError,
    TopicAlreadyExistsError,
    UnknownTopicOrPartitionError,
)

# Metrics are module-level; keep them out of the default registry during tests
os.environ.setdefault("PROMETHEUS_METRICS", "false")

from churn_stream.core.config import ConsumerSettings, KafkaSettings  # noqa: E402
from churn_stream.core.errors import BrokerUnavailableError  # noqa: E402
from churn_stream.core.retry import RetryPolicy  # noqa: E402
from churn_stream.serving.model_loader import FeatureContract, ModelArtifact  # noqa: E402
from churn_stream.streaming.broker import BrokerMessage, ProduceAck  # noqa: E402
from churn_stream.streaming.schemas import ConsumerOffset, CustomerEvent, TopicSpec  # noqa: E402


# =============================================================================
# ENVIRONMENT SETUP
# =============================================================================

@pytest.fixture(autouse=True)
def mock_environment(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    monkeypatch.setenv("MODEL_TRACKING_URI", "http://localhost:5001")
    monkeypatch.setenv("PROMETHEUS_METRICS", "false")
    for name in ("PRODUCER_MODE", "PRODUCER_DATA_PATH", "CONSUMER_GROUP_ID", "MODEL_URI", "MODEL_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the settings under test
    monkeypatch.chdir(os.path.dirname(os.path.abspath(__file__)))


# =============================================================================
# IN-MEMORY BROKER
# =============================================================================

class InMemoryConsumer:
    """TopicConsumer over an InMemoryBroker partition log."""

    def __init__(self, broker: "InMemoryBroker", topic: str, group_id: Optional[str], max_poll_records: int):
        self.broker = broker
        self.topic = topic
        self.group_id = group_id
        self.max_poll_records = max_poll_records
        self.closed = False
        # No group (or no committed offset) starts from the beginning
        self.positions: Dict[int, int] = {
            p: broker.offsets.get((group_id, topic, p), 0) for p in range(broker.partition_count(topic))
        }

    def poll(self, timeout: float) -> List[BrokerMessage]:
        self.broker.poll_calls += 1
        if self.broker.poll_failures:
            self.broker.poll_failures -= 1
            raise KafkaTimeoutError("poll timed out")

        messages: List[BrokerMessage] = []
        for partition in sorted(self.positions):
            log = self.broker.topics.get(self.topic, [[]])[partition]
            while self.positions[partition] < len(log) and len(messages) < self.max_poll_records:
                messages.append(log[self.positions[partition]])
                self.positions[partition] += 1
        return messages

    def commit(self, position: ConsumerOffset) -> None:
        if self.group_id is None:
            raise AssertionError("consumer without a group must not commit")
        if self.broker.commit_failures:
            self.broker.commit_failures -= 1
            raise KafkaTimeoutError("commit timed out")
        self.broker.offsets[(self.group_id, self.topic, position.partition)] = position.offset
        self.broker.commit_log.append((self.group_id, self.topic, position.partition, position.offset))

    def seek(self, partition: int, offset: int) -> None:
        self.broker.seeks.append((self.topic, partition, offset))
        self.positions[partition] = offset

    def committed(self, partition: int) -> Optional[int]:
        return self.broker.offsets.get((self.group_id, self.topic, partition))

    def close(self) -> None:
        self.closed = True


class InMemoryBroker:
    """
    Broker double with partitioned logs and group offsets.

    Failure injection:
        unavailable          every call raises a connection error
        produce_failures     {topic: n} fail the next n produce calls
        produce_fail_always  topics whose produce calls always fail
        poll_failures        fail the next n polls
        commit_failures      fail the next n commits
        deletion_lag         list_topics still shows a deleted topic this many times
    """

    def __init__(self):
        self.topics: Dict[str, List[List[BrokerMessage]]] = {}
        self.specs: Dict[str, TopicSpec] = {}
        self.offsets: Dict[Tuple[Optional[str], str, int], int] = {}
        self.commit_log: List[Tuple[Optional[str], str, int, int]] = []
        self.seeks: List[Tuple[str, int, int]] = []
        self.consumers: List[InMemoryConsumer] = []

        self.unavailable = False
        self.produce_failures: Dict[str, int] = defaultdict(int)
        self.produce_fail_always: Set[str] = set()
        self.poll_failures = 0
        self.commit_failures = 0
        self.deletion_lag = 0
        self._pending_deletion: Dict[str, int] = {}

        self.poll_calls = 0
        self.produce_calls = 0
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _check(self):
        if self.unavailable:
            raise KafkaConnectionError("broker unreachable")

    def check_connection(self) -> List[str]:
        if self.unavailable:
            raise BrokerUnavailableError("Cannot connect to Kafka broker", bootstrap_servers="memory")
        return self.list_topics()

    # Admin

    def create_topic(self, spec: TopicSpec) -> None:
        self._check()
        if spec.name in self.specs or spec.name in self._pending_deletion:
            raise TopicAlreadyExistsError(spec.name)
        self.specs[spec.name] = spec
        self.topics[spec.name] = [[] for _ in range(spec.partitions)]

    def delete_topic(self, name: str) -> None:
        self._check()
        if name not in self.specs:
            raise UnknownTopicOrPartitionError(name)
        del self.specs[name]
        del self.topics[name]
        for key in [k for k in self.offsets if k[1] == name]:
            del self.offsets[key]
        if self.deletion_lag:
            self._pending_deletion[name] = self.deletion_lag

    def list_topics(self) -> List[str]:
        self._check()
        names = set(self.specs)
        for name in list(self._pending_deletion):
            names.add(name)
            self._pending_deletion[name] -= 1
            if self._pending_deletion[name] <= 0:
                del self._pending_deletion[name]
        return sorted(names)

    def describe_topic(self, name: str) -> Optional[TopicSpec]:
        self._check()
        return self.specs.get(name)

    # Produce / consume

    def partition_count(self, topic: str) -> int:
        return len(self.topics.get(topic, [[]]))

    def produce(self, topic: str, key: Optional[bytes], value: bytes) -> ProduceAck:
        self._check()
        self.produce_calls += 1
        if topic in self.produce_fail_always:
            raise KafkaTimeoutError(f"produce to {topic} timed out")
        if self.produce_failures[topic]:
            self.produce_failures[topic] -= 1
            raise KafkaTimeoutError(f"produce to {topic} timed out")

        if topic not in self.topics:
            # Broker-side auto-create
            self.create_topic(TopicSpec(topic))
        log = self.topics[topic]
        partition = zlib.crc32(key) % len(log) if key else 0
        offset = len(log[partition])
        log[partition].append(BrokerMessage(topic, partition, offset, key, value))
        return ProduceAck(topic, partition, offset)

    def flush(self, timeout: Optional[float] = None) -> None:
        pass

    def consumer(self, topic: str, group_id: Optional[str], max_poll_records: int = 500) -> InMemoryConsumer:
        self._check()
        consumer = InMemoryConsumer(self, topic, group_id, max_poll_records)
        self.consumers.append(consumer)
        return consumer

    def close(self) -> None:
        self.closed = True

    # Test helpers

    def messages(self, topic: str) -> List[BrokerMessage]:
        return [m for partition in self.topics.get(topic, []) for m in partition]

    def publish_raw(self, topic: str, value: bytes, key: bytes = b"raw") -> ProduceAck:
        return self.produce(topic, key, value)


@pytest.fixture
def broker():
    """In-memory broker with the pipeline topics created."""
    broker = InMemoryBroker()
    broker.create_topic(TopicSpec("churn_predictions"))
    broker.create_topic(TopicSpec("churn_predictions_scored"))
    return broker


@pytest.fixture
def empty_broker():
    """In-memory broker without any topics."""
    return InMemoryBroker()


# =============================================================================
# SETTINGS FIXTURES
# =============================================================================

@pytest.fixture
def kafka_settings():
    return KafkaSettings()


@pytest.fixture
def consumer_settings():
    """Consumer settings with short timeouts for fast tests."""
    return ConsumerSettings(poll_timeout=0.01, quiescence_timeout=0.05, poll_interval=0)


@pytest.fixture
def retry_policy():
    """Retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0.0, sleep=lambda s: None)


# =============================================================================
# MODEL FIXTURES
# =============================================================================

FEATURE_ORDER = [
    "CreditScore",
    "Geography",
    "Gender",
    "Age",
    "Tenure",
    "Balance",
    "NumOfProducts",
    "HasCrCard",
    "IsActiveMember",
    "EstimatedSalary",
]

CATEGORY_MAPPINGS = {
    "Geography": {"France": 0, "Germany": 1, "Spain": 2},
    "Gender": {"Female": 0, "Male": 1},
}


@pytest.fixture(scope="session")
def feature_contract():
    return FeatureContract(
        feature_order=list(FEATURE_ORDER),
        category_mappings={k: dict(v) for k, v in CATEGORY_MAPPINGS.items()},
        threshold=0.5,
        model_version="3",
    )


@pytest.fixture(scope="session")
def churn_classifier():
    """Small scikit-learn pipeline fitted on synthetic customers."""
    from sklearn.linear_model import LogisticRegression
    from sklearn.pipeline import make_pipeline
    from sklearn.preprocessing import StandardScaler

    rng = np.random.default_rng(42)
    n = 400
    X = np.column_stack(
        [
            rng.normal(650, 97, n),
            rng.integers(0, 3, n),
            rng.integers(0, 2, n),
            np.clip(rng.normal(39, 10, n), 18, 92),
            rng.integers(0, 11, n),
            rng.uniform(0, 200000, n),
            rng.integers(1, 5, n),
            rng.integers(0, 2, n),
            rng.integers(0, 2, n),
            rng.uniform(10, 200000, n),
        ]
    )
    y = ((X[:, 3] > 45) | ((X[:, 8] == 0) & (X[:, 1] == 1))).astype(int)
    return make_pipeline(StandardScaler(), LogisticRegression(max_iter=1000)).fit(X, y)


@pytest.fixture
def model_artifact(churn_classifier, feature_contract):
    return ModelArtifact(model=churn_classifier, contract=feature_contract, version="3", model_uri="models:/churn-classifier/3")


@pytest.fixture
def scoring_engine(model_artifact):
    from churn_stream.serving.scoring import ScoringEngine

    return ScoringEngine(model_artifact)


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

@pytest.fixture
def sample_features():
    """A valid customer feature row."""
    return {
        "CreditScore": 619,
        "Geography": "France",
        "Gender": "Female",
        "Age": 42,
        "Tenure": 2,
        "Balance": 0.0,
        "NumOfProducts": 1,
        "HasCrCard": 1,
        "IsActiveMember": 1,
        "EstimatedSalary": 101348.88,
    }


@pytest.fixture
def sample_event(sample_features):
    return CustomerEvent.create("15634602", sample_features)


@pytest.fixture
def make_events(sample_features):
    """Factory for N valid events with varied features."""

    def _make(n: int) -> List[CustomerEvent]:
        events = []
        for i in range(n):
            features = dict(sample_features)
            features["Age"] = 20 + (i * 7) % 60
            features["Geography"] = ["France", "Germany", "Spain"][i % 3]
            features["IsActiveMember"] = i % 2
            events.append(CustomerEvent.create(f"{15600000 + i}", features))
        return events

    return _make


@pytest.fixture
def load_input(broker, make_events):
    """Publish N valid events to the input topic; returns the events."""

    def _load(n: int) -> List[CustomerEvent]:
        events = make_events(n)
        for event in events:
            broker.produce("churn_predictions", event.key, event.to_bytes())
        return events

    return _load
