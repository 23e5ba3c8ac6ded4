"""
Broker Session
==============

Narrow produce / consume / admin interface over Kafka, and the session handle
that owns every client connection for one process.

A `KafkaBroker` is created once by the entry point and passed into each
component constructor. Clients are created lazily and all of them are closed
when the session closes:

    with KafkaBroker(settings.kafka) as broker:
        broker.check_connection()
        TopicManager(broker, policy).ensure_defaults(settings.kafka)
        BatchConsumer(broker, engine, settings).run()

Consumers use manual commits only. The committed value is the next offset to
read, so `commit(partition, offset)` is called with `message.offset + 1`.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, runtime_checkable

from kafka import KafkaAdminClient, KafkaConsumer, KafkaProducer, TopicPartition
from kafka.admin import NewTopic
from kafka.errors import KafkaError, NoBrokersAvailable, UnknownTopicOrPartitionError
from kafka.structs import OffsetAndMetadata

from churn_stream.core.config import KafkaSettings
from churn_stream.core.errors import BrokerUnavailableError
from churn_stream.streaming.schemas import ConsumerOffset, TopicSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerMessage:
    """One record read from a topic partition."""

    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: bytes


@dataclass(frozen=True)
class ProduceAck:
    """Broker acknowledgement for a published record."""

    topic: str
    partition: int
    offset: int


# =============================================================================
# PROTOCOLS
# =============================================================================

@runtime_checkable
class TopicConsumer(Protocol):
    """Offset-aware reader bound to one topic and (optionally) one group."""

    def poll(self, timeout: float) -> List[BrokerMessage]:
        """Block up to `timeout` seconds; return whatever arrived, in partition order."""
        ...

    def commit(self, position: ConsumerOffset) -> None:
        """Commit `position.offset` (next offset to read) for its partition."""
        ...

    def seek(self, partition: int, offset: int) -> None:
        """Read `partition` from `offset` on the next poll."""
        ...

    def committed(self, partition: int) -> Optional[int]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class Broker(Protocol):
    """
    Protocol defining the broker contract used by every component.

    Implementations:
        - KafkaBroker: kafka-python clients
        - InMemoryBroker (tests): partitioned lists with group offsets
    """

    def create_topic(self, spec: TopicSpec) -> None:
        ...

    def delete_topic(self, name: str) -> None:
        ...

    def list_topics(self) -> List[str]:
        ...

    def describe_topic(self, name: str) -> Optional[TopicSpec]:
        """Current spec of `name`, or None when it does not exist."""
        ...

    def produce(self, topic: str, key: Optional[bytes], value: bytes) -> ProduceAck:
        """Publish one record and wait for its acknowledgement."""
        ...

    def consumer(
        self,
        topic: str,
        group_id: Optional[str],
        max_poll_records: int = 500,
    ) -> TopicConsumer:
        ...


# =============================================================================
# KAFKA IMPLEMENTATION
# =============================================================================

class KafkaTopicConsumer:
    """KafkaConsumer with auto-commit disabled, reading from the earliest offset."""

    def __init__(self, consumer: KafkaConsumer, topic: str):
        self._consumer = consumer
        self.topic = topic

    def poll(self, timeout: float) -> List[BrokerMessage]:
        records = self._consumer.poll(timeout_ms=int(timeout * 1000))
        messages: List[BrokerMessage] = []
        for tp, batch in records.items():
            for record in batch:
                messages.append(
                    BrokerMessage(
                        topic=tp.topic,
                        partition=tp.partition,
                        offset=record.offset,
                        key=record.key,
                        value=record.value,
                    )
                )
        return messages

    def commit(self, position: ConsumerOffset) -> None:
        tp = TopicPartition(position.topic, position.partition)
        self._consumer.commit(offsets={tp: OffsetAndMetadata(position.offset, position.metadata or "", -1)})

    def seek(self, partition: int, offset: int) -> None:
        tp = TopicPartition(self.topic, partition)
        if tp not in self._consumer.assignment():
            # Revoked by a rebalance: the new owner resumes from the committed offset
            logger.warning(f"Cannot seek {self.topic}[{partition}], partition no longer assigned")
            return
        self._consumer.seek(tp, offset)

    def committed(self, partition: int) -> Optional[int]:
        return self._consumer.committed(TopicPartition(self.topic, partition))

    def close(self) -> None:
        try:
            self._consumer.close(autocommit=False)
        except KafkaError as e:
            logger.warning(f"Error closing Kafka consumer: {e}")


class KafkaBroker:
    """
    Session handle owning the admin, producer and consumer clients.

    Not thread-safe: one session per process/task.
    """

    def __init__(self, config: KafkaSettings):
        self.config = config
        self._admin: Optional[KafkaAdminClient] = None
        self._producer: Optional[KafkaProducer] = None
        self._consumers: List[KafkaTopicConsumer] = []
        self._closed = False

    def __enter__(self) -> "KafkaBroker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Lazy clients
    # -------------------------------------------------------------------------

    def _unavailable(self, e: Exception) -> BrokerUnavailableError:
        return BrokerUnavailableError(
            f"Cannot connect to Kafka broker at {self.config.bootstrap_servers}: {e}",
            bootstrap_servers=self.config.bootstrap_servers,
        )

    @property
    def admin(self) -> KafkaAdminClient:
        if self._admin is None:
            try:
                self._admin = KafkaAdminClient(
                    bootstrap_servers=self.config.bootstrap_servers,
                    client_id=f"{self.config.client_id}-admin",
                    request_timeout_ms=self.config.request_timeout_ms,
                )
            except NoBrokersAvailable as e:
                raise self._unavailable(e) from e
        return self._admin

    @property
    def producer(self) -> KafkaProducer:
        if self._producer is None:
            try:
                self._producer = KafkaProducer(
                    bootstrap_servers=self.config.bootstrap_servers,
                    client_id=f"{self.config.client_id}-producer",
                    acks="all",
                    request_timeout_ms=self.config.request_timeout_ms,
                )
            except NoBrokersAvailable as e:
                raise self._unavailable(e) from e
        return self._producer

    def check_connection(self) -> List[str]:
        """
        Verify the broker is reachable.

        Returns:
            Current topic names

        Raises:
            BrokerUnavailableError: broker not reachable
        """
        try:
            topics = self.list_topics()
        except KafkaError as e:
            raise self._unavailable(e) from e
        logger.info(f"Connected to Kafka at {self.config.bootstrap_servers} ({len(topics)} topics)")
        return topics

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    def create_topic(self, spec: TopicSpec) -> None:
        self.admin.create_topics(
            [
                NewTopic(
                    name=spec.name,
                    num_partitions=spec.partitions,
                    replication_factor=spec.replication_factor,
                )
            ],
            validate_only=False,
        )

    def delete_topic(self, name: str) -> None:
        self.admin.delete_topics([name])

    def list_topics(self) -> List[str]:
        return sorted(self.admin.list_topics())

    def describe_topic(self, name: str) -> Optional[TopicSpec]:
        if name not in self.list_topics():
            return None
        try:
            described = self.admin.describe_topics([name])
        except UnknownTopicOrPartitionError:
            return None

        for meta in described:
            if meta.get("topic") != name:
                continue
            if meta.get("error_code", 0) == UnknownTopicOrPartitionError.errno:
                return None
            partitions = meta.get("partitions") or []
            replication = len(partitions[0].get("replicas", [])) if partitions else 0
            return TopicSpec(name=name, partitions=len(partitions), replication_factor=replication)
        return None

    # -------------------------------------------------------------------------
    # Produce / consume
    # -------------------------------------------------------------------------

    def produce(self, topic: str, key: Optional[bytes], value: bytes) -> ProduceAck:
        future = self.producer.send(topic, key=key, value=value)
        metadata = future.get(timeout=self.config.publish_timeout)
        return ProduceAck(topic=metadata.topic, partition=metadata.partition, offset=metadata.offset)

    def flush(self, timeout: Optional[float] = None) -> None:
        if self._producer is not None:
            self._producer.flush(timeout)

    def consumer(
        self,
        topic: str,
        group_id: Optional[str],
        max_poll_records: int = 500,
    ) -> KafkaTopicConsumer:
        """
        Subscribe to `topic`.

        With a group the consumer resumes from the group's committed offset
        (earliest when none is valid, e.g. after a flush). Without a group it
        reads from the beginning and never commits.
        """
        try:
            kafka_consumer = KafkaConsumer(
                topic,
                bootstrap_servers=self.config.bootstrap_servers,
                client_id=f"{self.config.client_id}-consumer",
                group_id=group_id,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
                max_poll_records=max_poll_records,
            )
        except NoBrokersAvailable as e:
            raise self._unavailable(e) from e

        wrapped = KafkaTopicConsumer(kafka_consumer, topic)
        self._consumers.append(wrapped)
        logger.info(f"Subscribed to {topic} (group: {group_id or 'none'})")
        return wrapped

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release every client. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        for consumer in self._consumers:
            consumer.close()
        self._consumers.clear()

        if self._producer is not None:
            try:
                self._producer.flush(self.config.publish_timeout)
                self._producer.close()
                logger.info("Kafka producer closed")
            except KafkaError as e:
                logger.warning(f"Error closing Kafka producer: {e}")
            self._producer = None

        if self._admin is not None:
            try:
                self._admin.close()
            except KafkaError as e:
                logger.warning(f"Error closing Kafka admin client: {e}")
            self._admin = None
