"""
Topic Lifecycle Manager
=======================

Idempotent create / delete / flush / cleanup for the pipeline's topics.

    ensure(spec)       create if absent; no-op if present and matching;
                       TopicSpecConflictError if present with a different shape
    delete(name)       absent topic is not an error
    flush(spec)        delete + ensure: every retained message is destroyed and
                       consumer groups restart from offset 0 (earliest)
    cleanup(keep)      delete every non-internal topic not in `keep`
"""

import logging
from typing import Any, Dict, Iterable, List

from kafka.errors import TopicAlreadyExistsError, UnknownTopicOrPartitionError

from churn_stream.core.config import KafkaSettings
from churn_stream.core.errors import (
    BrokerUnavailableError,
    RetryExhaustedError,
    TopicSpecConflictError,
)
from churn_stream.core.retry import RetryPolicy
from churn_stream.streaming.broker import Broker
from churn_stream.streaming.schemas import TopicSpec

logger = logging.getLogger(__name__)


class TopicStillPresentError(Exception):
    """Deleted topic is still listed by the broker."""


def default_topic_specs(config: KafkaSettings) -> List[TopicSpec]:
    """The input and scored topic specs."""
    return [
        TopicSpec(config.input_topic, config.partitions, config.replication_factor),
        TopicSpec(config.scored_topic, config.partitions, config.replication_factor),
    ]


class TopicManager:
    """Topic administration over a broker session."""

    def __init__(self, broker: Broker, retry_policy: RetryPolicy):
        self.broker = broker
        self.retry_policy = retry_policy

    def _call(self, func, *args, operation: str):
        try:
            return self.retry_policy.call(func, *args, operation=operation)
        except RetryExhaustedError as e:
            raise BrokerUnavailableError(str(e)) from e

    def ensure(self, spec: TopicSpec) -> bool:
        """
        Create `spec` if absent.

        Returns:
            True if the topic was created, False if it already existed

        Raises:
            TopicSpecConflictError: existing topic has a different shape
        """
        existing = self._call(self.broker.describe_topic, spec.name, operation=f"describe {spec.name}")

        if existing is None:
            if self._call(self._create, spec, operation=f"create {spec.name}"):
                logger.info(
                    f"Created topic {spec.name} "
                    f"(partitions={spec.partitions}, replication={spec.replication_factor})"
                )
                return True
            # Lost a race with another creator
            existing = self._call(self.broker.describe_topic, spec.name, operation=f"describe {spec.name}")
            if existing is None:
                raise BrokerUnavailableError(f"Topic {spec.name} is pending deletion on the broker")

        if not existing.matches(spec):
            raise TopicSpecConflictError(
                f"Topic {spec.name} exists with partitions={existing.partitions}, "
                f"replication={existing.replication_factor}; "
                f"requested partitions={spec.partitions}, replication={spec.replication_factor}",
                topic=spec.name,
                existing={"partitions": existing.partitions, "replication_factor": existing.replication_factor},
                requested={"partitions": spec.partitions, "replication_factor": spec.replication_factor},
            )

        logger.info(f"Topic {spec.name} already exists")
        return False

    def delete(self, name: str) -> bool:
        """
        Delete `name` if present.

        Returns:
            True if a topic was deleted, False if it was already absent
        """
        if name not in self._call(self.broker.list_topics, operation="list topics"):
            logger.info(f"Topic {name} not found (already clean)")
            return False

        if not self._call(self._delete, name, operation=f"delete {name}"):
            logger.info(f"Topic {name} not found (already clean)")
            return False

        logger.info(f"Deleted topic {name}")
        return True

    def _create(self, spec: TopicSpec) -> bool:
        try:
            self.broker.create_topic(spec)
        except TopicAlreadyExistsError:
            return False
        return True

    def _delete(self, name: str) -> bool:
        try:
            self.broker.delete_topic(name)
        except UnknownTopicOrPartitionError:
            return False
        return True

    def _wait_until_absent(self, name: str) -> None:
        def check():
            if name in self.broker.list_topics():
                raise TopicStillPresentError(name)

        policy = RetryPolicy(
            max_attempts=self.retry_policy.max_attempts,
            base_delay=self.retry_policy.base_delay,
            max_delay=self.retry_policy.max_delay,
            jitter=self.retry_policy.jitter,
            retry_on=self.retry_policy.retry_on + (TopicStillPresentError,),
            sleep=self.retry_policy.sleep,
        )
        try:
            policy.call(check, operation=f"await deletion of {name}")
        except RetryExhaustedError as e:
            raise BrokerUnavailableError(str(e)) from e

    def flush(self, spec: TopicSpec) -> None:
        """Destroy all retained messages by recreating the topic."""
        logger.info(f"Flushing topic {spec.name}...")
        if self.delete(spec.name):
            self._wait_until_absent(spec.name)
        # Creation right after deletion can still see the old topic
        self._call(self._create_or_match, spec, operation=f"recreate {spec.name}")
        logger.info(f"Topic {spec.name} flushed - now empty")

    def _create_or_match(self, spec: TopicSpec) -> None:
        existing = self.broker.describe_topic(spec.name)
        if existing is None:
            self.broker.create_topic(spec)
        elif not existing.matches(spec):
            raise TopicSpecConflictError(f"Topic {spec.name} recreated with a different shape", topic=spec.name)

    def cleanup(self, keep: Iterable[str]) -> List[str]:
        """
        Delete every topic not in `keep`, leaving internal topics alone.

        Returns:
            Names of deleted topics
        """
        keep_set = set(keep)
        deleted = []
        for name in self._call(self.broker.list_topics, operation="list topics"):
            if name in keep_set or name.startswith("__"):
                continue
            if self.delete(name):
                deleted.append(name)
        logger.info(f"Topic cleanup completed, removed {len(deleted)} topic(s)")
        return deleted

    # -------------------------------------------------------------------------
    # Well-known topics
    # -------------------------------------------------------------------------

    def ensure_defaults(self, config: KafkaSettings) -> Dict[str, bool]:
        return {spec.name: self.ensure(spec) for spec in default_topic_specs(config)}

    def flush_defaults(self, config: KafkaSettings) -> None:
        for spec in default_topic_specs(config):
            self.flush(spec)

    def status(self) -> Dict[str, Any]:
        """Broker reachability and topic list."""
        try:
            topics = self._call(self.broker.list_topics, operation="list topics")
        except BrokerUnavailableError as e:
            return {"reachable": False, "topics": [], "error": str(e)}
        return {"reachable": True, "topics": topics, "error": None}
