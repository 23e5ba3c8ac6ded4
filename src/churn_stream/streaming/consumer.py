"""
Scoring Consumers
=================

Read customer events, score them and publish predictions to the scored topic.

    BatchConsumer       drain the input topic until quiescent, then return
    ContinuousConsumer  poll forever until cancelled

Per message the cycle is strictly sequential:

    decode → score → publish (wait for ack) → commit offset + 1

Delivery guarantee is at-least-once: an offset is committed only after the
prediction it produced is acknowledged, so a crash between publish and commit
re-delivers the message and the scored topic may hold duplicates.

Outcomes:
    processed   prediction published, offset committed
    skipped     event malformed or incompatible with the model; offset
                committed so a poison message cannot block its partition
    failed      scoring error or publish retries exhausted; nothing more is
                committed on that partition until the message succeeds.
                BatchConsumer leaves it for the next run; ContinuousConsumer
                rewinds the partition and retries it on the next cycle.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from churn_stream.core.cancellation import CancellationToken
from churn_stream.core.config import ConsumerSettings, KafkaSettings
from churn_stream.core.errors import (
    BrokerUnavailableError,
    PublishError,
    RetryExhaustedError,
    SchemaMismatchError,
    ScoringError,
)
from churn_stream.core.monitoring import (
    Timer,
    committed_offset_gauge,
    messages_consumed_counter,
    publish_latency_histogram,
    publish_retry_counter,
    safe_increment,
    safe_set_gauge,
)
from churn_stream.core.retry import RetryPolicy
from churn_stream.serving.scoring import ScoringEngine
from churn_stream.streaming.broker import Broker, BrokerMessage, TopicConsumer
from churn_stream.streaming.schemas import ConsumerOffset, CustomerEvent, ScoredPrediction

logger = logging.getLogger(__name__)


class ConsumerState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    SCORING = "scoring"
    PUBLISHING = "publishing"
    DONE = "done"


class MessageOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RunSummary:
    """Counts and committed offsets for one consumer run."""

    consumed: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    recovered: int = 0
    committed: Dict[int, int] = field(default_factory=dict)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    cycles: int = 0
    elapsed_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        """Non-zero iff any message permanently failed."""
        return 1 if self.failed else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consumed": self.consumed,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "recovered": self.recovered,
            "committed": {str(p): o for p, o in sorted(self.committed.items())},
            "failures": list(self.failures),
            "cycles": self.cycles,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class ScoringConsumer:
    """
    Shared scoring/publish/commit discipline for both consumers.

    One instance owns one TopicConsumer for the duration of `run`.
    """

    mode = "base"

    def __init__(
        self,
        broker: Broker,
        engine: ScoringEngine,
        kafka_config: KafkaSettings,
        consumer_config: ConsumerSettings,
        retry_policy: RetryPolicy,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.engine = engine
        self.kafka_config = kafka_config
        self.config = consumer_config
        self.retry_policy = retry_policy
        self.clock = clock

        self.state = ConsumerState.IDLE
        self.summary = RunSummary()
        self._consumer: Optional[TopicConsumer] = None
        # Partition -> offset of its first unresolved failure
        self._blocked: Dict[int, int] = {}

    @property
    def input_topic(self) -> str:
        return self.kafka_config.input_topic

    @property
    def scored_topic(self) -> str:
        return self.kafka_config.scored_topic

    # -------------------------------------------------------------------------
    # Broker calls
    # -------------------------------------------------------------------------

    def _open(self) -> None:
        self.summary = RunSummary()
        self._blocked.clear()
        self._consumer = self.broker.consumer(
            self.input_topic,
            self.config.group_id,
            max_poll_records=self.config.max_poll_records,
        )
        logger.info(
            f"{self.__class__.__name__} reading {self.input_topic} → {self.scored_topic} "
            f"(group: {self.config.group_id}, model version: {self.engine.model_version})"
        )

    def _close(self) -> None:
        if self._consumer is not None:
            self._consumer.close()
            self._consumer = None

    def _poll(self) -> List[BrokerMessage]:
        try:
            return self.retry_policy.call(
                self._consumer.poll,
                self.config.poll_timeout,
                operation=f"poll {self.input_topic}",
            )
        except RetryExhaustedError as e:
            raise BrokerUnavailableError(str(e), bootstrap_servers=self.kafka_config.bootstrap_servers) from e

    def _publish(self, prediction: ScoredPrediction) -> None:
        try:
            with Timer(publish_latency_histogram, topic=self.scored_topic):
                self.retry_policy.call(
                    self.broker.produce,
                    self.scored_topic,
                    prediction.key,
                    prediction.to_bytes(),
                    operation=f"publish prediction {prediction.event_id}",
                    on_retry=lambda attempt, e: safe_increment(publish_retry_counter, topic=self.scored_topic),
                )
        except RetryExhaustedError as e:
            raise PublishError(str(e), topic=self.scored_topic, event_id=prediction.event_id) from e

    def _commit(self, message: BrokerMessage) -> None:
        if message.partition in self._blocked:
            logger.debug(
                f"Commit withheld for partition {message.partition} offset {message.offset} "
                f"(unresolved failure at offset {self._blocked[message.partition]})"
            )
            return

        position = ConsumerOffset(self.input_topic, message.partition, message.offset + 1)
        try:
            self.retry_policy.call(
                self._consumer.commit,
                position,
                operation=f"commit {position.topic}[{position.partition}]@{position.offset}",
            )
        except RetryExhaustedError as e:
            raise BrokerUnavailableError(str(e), bootstrap_servers=self.kafka_config.bootstrap_servers) from e

        self.summary.committed[position.partition] = position.offset
        safe_set_gauge(committed_offset_gauge, position.offset, topic=position.topic, partition=str(position.partition))

    # -------------------------------------------------------------------------
    # Per-message handling
    # -------------------------------------------------------------------------

    def _record(self, outcome: MessageOutcome) -> None:
        safe_increment(messages_consumed_counter, mode=self.mode, outcome=outcome.value)

    def _find_failure(self, message: BrokerMessage) -> Optional[Dict[str, Any]]:
        for failure in self.summary.failures:
            if failure["partition"] == message.partition and failure["offset"] == message.offset:
                return failure
        return None

    def _fail(self, message: BrokerMessage, error: Exception, event_id: Optional[str]) -> MessageOutcome:
        failure = self._find_failure(message)
        if failure is None:
            self.summary.failed += 1
            self.summary.failures.append(
                {
                    "partition": message.partition,
                    "offset": message.offset,
                    "event_id": event_id,
                    "error": str(error),
                    "attempts": 1,
                }
            )
        else:
            failure["attempts"] += 1
            failure["error"] = str(error)

        if message.partition not in self._blocked:
            logger.error(
                f"Message {message.partition}:{message.offset} failed, "
                f"commits on partition {message.partition} withheld until it succeeds: {error}"
            )
            self._blocked[message.partition] = message.offset
        self._record(MessageOutcome.FAILED)
        return MessageOutcome.FAILED

    def _resolve(self, message: BrokerMessage) -> None:
        """Drop the failure record of a message that has now succeeded."""
        failure = self._find_failure(message)
        if failure is None:
            return
        self.summary.failures.remove(failure)
        self.summary.failed -= 1
        self.summary.recovered += 1
        logger.info(
            f"Message {message.partition}:{message.offset} succeeded after "
            f"{failure['attempts']} failed attempt(s)"
        )

    def handle(self, message: BrokerMessage) -> MessageOutcome:
        """Score, publish and commit one message."""
        self.summary.consumed += 1
        self.state = ConsumerState.SCORING

        event_id = None
        try:
            event = CustomerEvent.from_bytes(message.value)
            event_id = event.event_id
            prediction = self.engine.score(event)
        except SchemaMismatchError as e:
            logger.warning(
                f"Skipping message {message.partition}:{message.offset} "
                f"(event {event_id or 'unknown'}): {e.message} {e.details}"
            )
            self.summary.skipped += 1
            self._record(MessageOutcome.SKIPPED)
            self._resolve(message)
            self._commit(message)
            return MessageOutcome.SKIPPED
        except ScoringError as e:
            return self._fail(message, e, event_id)

        self.state = ConsumerState.PUBLISHING
        try:
            self._publish(prediction)
        except PublishError as e:
            return self._fail(message, e, event_id)

        self.summary.processed += 1
        self._record(MessageOutcome.PROCESSED)
        self._resolve(message)
        self._commit(message)
        return MessageOutcome.PROCESSED

    def process(self, messages: List[BrokerMessage]) -> None:
        for message in messages:
            self.handle(message)

    def _log_summary(self) -> None:
        summary = self.summary
        logger.info("=" * 60)
        logger.info(f"{self.__class__.__name__} finished")
        logger.info(f"  Consumed: {summary.consumed}")
        logger.info(f"  Processed: {summary.processed}")
        logger.info(f"  Skipped (schema mismatch): {summary.skipped}")
        logger.info(f"  Failed: {summary.failed}")
        if summary.recovered:
            logger.info(f"  Recovered on retry: {summary.recovered}")
        logger.info(f"  Committed offsets: {summary.committed}")
        logger.info(f"  Elapsed: {summary.elapsed_seconds:.1f}s")
        if summary.failed:
            logger.error(f"  {summary.failed} message(s) will be re-delivered on the next run")
        logger.info("=" * 60)


class BatchConsumer(ScoringConsumer):
    """Drains the input topic until no message arrives within the quiescence timeout."""

    mode = "batch"

    def run(self) -> RunSummary:
        start = self.clock()
        self._open()
        try:
            self.state = ConsumerState.DRAINING
            last_message_at = self.clock()

            while True:
                messages = self._poll()
                if not messages:
                    if self.clock() - last_message_at >= self.config.quiescence_timeout:
                        logger.info(f"No messages for {self.config.quiescence_timeout:g}s, input drained")
                        break
                    continue

                self.summary.cycles += 1
                self.process(messages)
                self.state = ConsumerState.DRAINING
                last_message_at = self.clock()

                if self.summary.consumed // 100 > (self.summary.consumed - len(messages)) // 100:
                    logger.info(f"Progress: {self.summary.consumed} consumed, {self.summary.processed} scored")
        finally:
            self._close()

        self.state = ConsumerState.DONE
        self.summary.elapsed_seconds = self.clock() - start
        self._log_summary()
        return self.summary


class ContinuousConsumer(ScoringConsumer):
    """
    Polls until cancelled.

    The token is checked only between cycles: every message returned by a
    poll is scored, published and committed before the loop can exit.
    """

    mode = "continuous"

    # Messages skipped this cycle because their partition is waiting on a retry
    _deferred = 0

    def _rewind(self) -> None:
        """Seek every blocked partition back to its failed offset."""
        for partition, offset in sorted(self._blocked.items()):
            logger.info(f"Retrying {self.input_topic}[{partition}] from failed offset {offset}")
            self._consumer.seek(partition, offset)
        self._blocked.clear()

    def process(self, messages: List[BrokerMessage]) -> None:
        # Messages behind a failure are re-read after the rewind, not scored twice
        for message in messages:
            if message.partition in self._blocked:
                self._deferred += 1
                continue
            self.handle(message)

    def run_cycle(self) -> int:
        """One poll and the processing of everything it returned."""
        self.state = ConsumerState.DRAINING
        self._rewind()
        messages = self._poll()
        self.summary.cycles += 1
        self._deferred = 0
        if messages:
            self.process(messages)
            logger.info(
                f"Cycle {self.summary.cycles}: {len(messages)} message(s) "
                f"(total processed={self.summary.processed}, skipped={self.summary.skipped}, "
                f"failed={self.summary.failed}, deferred={self._deferred})"
            )
        self.state = ConsumerState.IDLE
        return len(messages)

    def run(self, token: CancellationToken) -> RunSummary:
        start = self.clock()
        self._open()
        logger.info(f"Polling every {self.config.poll_interval:g}s until cancelled")
        try:
            while not token.is_cancelled:
                self.run_cycle()
                if token.wait(self.config.poll_interval):
                    break
        finally:
            self._close()

        self.state = ConsumerState.DONE
        self.summary.elapsed_seconds = self.clock() - start
        self._log_summary()
        return self.summary
