"""
Unit tests for the Kafka broker session.

kafka-python clients are patched; these tests check how the session drives
them (acks, manual commits, topic description, shutdown).
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kafka import TopicPartition
from kafka.errors import NoBrokersAvailable, UnknownTopicOrPartitionError

from churn_stream.core.config import KafkaSettings
from churn_stream.core.errors import BrokerUnavailableError
from churn_stream.streaming.broker import Broker, KafkaBroker, KafkaTopicConsumer, TopicConsumer
from churn_stream.streaming.schemas import ConsumerOffset, TopicSpec

MODULE = "churn_stream.streaming.broker"


@pytest.fixture
def kafka_config():
    return KafkaSettings(bootstrap_servers="kafka:9092", publish_timeout=3.0)


class TestProtocols:
    """Tests for structural typing."""

    def test_kafka_broker_is_broker(self, kafka_config):
        assert isinstance(KafkaBroker(kafka_config), Broker)

    def test_in_memory_broker_is_broker(self, broker):
        assert isinstance(broker, Broker)
        assert isinstance(broker.consumer("churn_predictions", "g"), TopicConsumer)


class TestAdmin:
    """Tests for admin operations."""

    def test_admin_unavailable(self, kafka_config):
        """Test NoBrokersAvailable becomes BrokerUnavailableError."""
        with patch(f"{MODULE}.KafkaAdminClient", side_effect=NoBrokersAvailable()):
            broker = KafkaBroker(kafka_config)
            with pytest.raises(BrokerUnavailableError) as exc_info:
                broker.list_topics()
        assert exc_info.value.details["bootstrap_servers"] == "kafka:9092"

    def test_create_topic(self, kafka_config):
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls:
            broker = KafkaBroker(kafka_config)
            broker.create_topic(TopicSpec("t", 3, 1))
        new_topic = admin_cls.return_value.create_topics.call_args.args[0][0]
        assert new_topic.name == "t"
        assert new_topic.num_partitions == 3
        assert new_topic.replication_factor == 1

    def test_list_topics_sorted(self, kafka_config):
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls:
            admin_cls.return_value.list_topics.return_value = ["b", "a"]
            assert KafkaBroker(kafka_config).list_topics() == ["a", "b"]

    def test_describe_topic(self, kafka_config):
        """Test partitions and replication are read from topic metadata."""
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls:
            admin = admin_cls.return_value
            admin.list_topics.return_value = ["t"]
            admin.describe_topics.return_value = [
                {
                    "topic": "t",
                    "error_code": 0,
                    "partitions": [{"partition": 0, "replicas": [1, 2]}, {"partition": 1, "replicas": [2, 1]}],
                }
            ]
            assert KafkaBroker(kafka_config).describe_topic("t") == TopicSpec("t", 2, 2)

    def test_describe_missing_topic(self, kafka_config):
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls:
            admin_cls.return_value.list_topics.return_value = []
            assert KafkaBroker(kafka_config).describe_topic("t") is None
            admin_cls.return_value.describe_topics.assert_not_called()

    def test_describe_unknown_topic_error(self, kafka_config):
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls:
            admin = admin_cls.return_value
            admin.list_topics.return_value = ["t"]
            admin.describe_topics.side_effect = UnknownTopicOrPartitionError()
            assert KafkaBroker(kafka_config).describe_topic("t") is None


class TestProduce:
    """Tests for publishing."""

    def test_producer_waits_for_all_replicas(self, kafka_config):
        with patch(f"{MODULE}.KafkaProducer") as producer_cls:
            KafkaBroker(kafka_config).producer
        assert producer_cls.call_args.kwargs["acks"] == "all"

    def test_produce_waits_for_ack(self, kafka_config):
        """Test produce blocks on the future with the publish timeout."""
        with patch(f"{MODULE}.KafkaProducer") as producer_cls:
            future = producer_cls.return_value.send.return_value
            future.get.return_value = SimpleNamespace(topic="t", partition=0, offset=41)

            ack = KafkaBroker(kafka_config).produce("t", b"k", b"v")

        producer_cls.return_value.send.assert_called_once_with("t", key=b"k", value=b"v")
        future.get.assert_called_once_with(timeout=3.0)
        assert (ack.topic, ack.partition, ack.offset) == ("t", 0, 41)


class TestConsumer:
    """Tests for the consumer wrapper."""

    def test_consumer_manual_commit_from_earliest(self, kafka_config):
        with patch(f"{MODULE}.KafkaConsumer") as consumer_cls:
            KafkaBroker(kafka_config).consumer("t", "g", max_poll_records=10)
        kwargs = consumer_cls.call_args.kwargs
        assert consumer_cls.call_args.args == ("t",)
        assert kwargs["enable_auto_commit"] is False
        assert kwargs["auto_offset_reset"] == "earliest"
        assert kwargs["group_id"] == "g"
        assert kwargs["max_poll_records"] == 10

    def test_poll_flattens_records(self):
        kafka_consumer = MagicMock()
        record = SimpleNamespace(offset=5, key=b"k", value=b"v")
        kafka_consumer.poll.return_value = {TopicPartition("t", 0): [record]}

        messages = KafkaTopicConsumer(kafka_consumer, "t").poll(0.5)

        kafka_consumer.poll.assert_called_once_with(timeout_ms=500)
        assert len(messages) == 1
        assert (messages[0].partition, messages[0].offset, messages[0].value) == (0, 5, b"v")

    def test_commit_explicit_offset(self):
        """Test commit sends the given next-offset for one partition."""
        kafka_consumer = MagicMock()
        KafkaTopicConsumer(kafka_consumer, "t").commit(ConsumerOffset("t", 2, 11))

        offsets = kafka_consumer.commit.call_args.kwargs["offsets"]
        (tp, meta), = offsets.items()
        assert tp == TopicPartition("t", 2)
        assert meta.offset == 11

    def test_seek_assigned_partition(self):
        kafka_consumer = MagicMock()
        kafka_consumer.assignment.return_value = {TopicPartition("t", 0)}

        KafkaTopicConsumer(kafka_consumer, "t").seek(0, 7)

        kafka_consumer.seek.assert_called_once_with(TopicPartition("t", 0), 7)

    def test_seek_revoked_partition_is_ignored(self):
        """Test a partition lost to a rebalance is left to its new owner."""
        kafka_consumer = MagicMock()
        kafka_consumer.assignment.return_value = {TopicPartition("t", 1)}

        KafkaTopicConsumer(kafka_consumer, "t").seek(0, 7)

        kafka_consumer.seek.assert_not_called()


class TestClose:
    """Tests for session shutdown."""

    def test_close_releases_everything(self, kafka_config):
        with patch(f"{MODULE}.KafkaAdminClient") as admin_cls, patch(
            f"{MODULE}.KafkaProducer"
        ) as producer_cls, patch(f"{MODULE}.KafkaConsumer") as consumer_cls:
            with KafkaBroker(kafka_config) as broker:
                broker.admin
                broker.producer
                broker.consumer("t", "g")

        admin_cls.return_value.close.assert_called_once()
        producer_cls.return_value.flush.assert_called_once()
        producer_cls.return_value.close.assert_called_once()
        consumer_cls.return_value.close.assert_called_once_with(autocommit=False)

    def test_close_idempotent(self, kafka_config):
        with patch(f"{MODULE}.KafkaProducer") as producer_cls:
            broker = KafkaBroker(kafka_config)
            broker.producer
            broker.close()
            broker.close()
        producer_cls.return_value.close.assert_called_once()
