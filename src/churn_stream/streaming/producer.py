"""
Customer Event Producer
=======================

Publishes customer events to the input topic.

Modes:
    streaming   one event every 1/rate seconds for `duration` seconds
    batch       exactly `num_events` events, as fast as the broker accepts them

Events are sampled from a raw customer CSV when one is configured, otherwise
synthetic bank customers are generated. Every event gets a fresh event_id.

A publish that still fails after the retry budget aborts the run; the report
carries how many events were acknowledged before the failure.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd

from churn_stream.core.cancellation import CancellationToken
from churn_stream.core.config import ProducerMode
from churn_stream.core.errors import PublishError, RetryExhaustedError
from churn_stream.core.monitoring import (
    Timer,
    events_produced_counter,
    publish_latency_histogram,
    publish_retry_counter,
    safe_increment,
)
from churn_stream.core.retry import RetryPolicy
from churn_stream.streaming.broker import Broker, ProduceAck
from churn_stream.streaming.schemas import CustomerEvent

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT SAMPLING
# ═══════════════════════════════════════════════════════════════════════════════

# Model features; identifier and label columns (RowNumber, CustomerId, Surname, Exited) are never sent
FEATURE_COLUMNS = [
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

GEOGRAPHIES = ["France", "Germany", "Spain"]
GEOGRAPHY_WEIGHTS = [0.5, 0.25, 0.25]
GENDERS = ["Female", "Male"]
PRODUCT_COUNTS = [1, 2, 3, 4]
PRODUCT_WEIGHTS = [0.51, 0.46, 0.027, 0.003]


def _to_native(value: Any) -> Any:
    """numpy/pandas scalar → JSON-serializable Python value (NaN → None)."""
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


class EventSampler:
    """Draws customer feature rows from a dataset or a synthetic generator."""

    def __init__(self, data_path: Optional[str] = None, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)
        self.data_path = data_path
        self._frame: Optional[pd.DataFrame] = self._load(data_path) if data_path else None

    @staticmethod
    def _load(path: str) -> pd.DataFrame:
        frame = pd.read_csv(path)
        missing = [c for c in FEATURE_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Dataset {path} is missing feature columns: {missing}")
        if frame.empty:
            raise ValueError(f"Dataset {path} has no rows")
        logger.info(f"Loaded {len(frame)} customers from {path}")
        return frame

    @property
    def source(self) -> str:
        return self.data_path if self._frame is not None else "synthetic"

    def sample(self) -> CustomerEvent:
        if self._frame is not None:
            return self._sample_row()
        return self._synthetic()

    def _sample_row(self) -> CustomerEvent:
        row = self._frame.iloc[int(self.rng.integers(0, len(self._frame)))]
        features = {c: _to_native(row[c]) for c in FEATURE_COLUMNS}
        if "CustomerId" in row.index:
            customer_id = str(_to_native(row["CustomerId"]))
        else:
            customer_id = f"CUST_{int(self.rng.integers(0, 10**8)):08d}"
        return CustomerEvent.create(customer_id, features)

    def _synthetic(self) -> CustomerEvent:
        rng = self.rng
        has_balance = rng.random() > 0.36
        features: Dict[str, Any] = {
            "CreditScore": int(np.clip(rng.normal(650, 97), 350, 850)),
            "Geography": str(rng.choice(GEOGRAPHIES, p=GEOGRAPHY_WEIGHTS)),
            "Gender": str(rng.choice(GENDERS)),
            "Age": int(np.clip(rng.normal(39, 10), 18, 92)),
            "Tenure": int(rng.integers(0, 11)),
            "Balance": round(float(max(rng.normal(119800, 30000), 0.0)), 2) if has_balance else 0.0,
            "NumOfProducts": int(rng.choice(PRODUCT_COUNTS, p=PRODUCT_WEIGHTS)),
            "HasCrCard": int(rng.random() < 0.7),
            "IsActiveMember": int(rng.random() < 0.52),
            "EstimatedSalary": round(float(rng.uniform(11.58, 199992.48)), 2),
        }
        customer_id = str(int(rng.integers(15565701, 15815691)))
        return CustomerEvent.create(customer_id, features)


# ═══════════════════════════════════════════════════════════════════════════════
# PRODUCER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ProduceReport:
    """Outcome of one producer run. Partial success is reported, not hidden."""

    mode: ProducerMode
    produced: int = 0
    requested: Optional[int] = None
    aborted: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "produced": self.produced,
            "requested": self.requested,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "error": self.error,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class EventProducer:
    """Publishes sampled customer events to the input topic."""

    def __init__(
        self,
        broker: Broker,
        topic: str,
        retry_policy: RetryPolicy,
        sampler: Optional[EventSampler] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.broker = broker
        self.topic = topic
        self.retry_policy = retry_policy
        self.sampler = sampler or EventSampler()
        self.clock = clock
        self.sleep = sleep

    def publish(self, event: CustomerEvent) -> ProduceAck:
        """
        Publish one event, retrying transient failures.

        Raises:
            PublishError: retry budget exhausted
        """
        try:
            with Timer(publish_latency_histogram, topic=self.topic):
                return self.retry_policy.call(
                    self.broker.produce,
                    self.topic,
                    event.key,
                    event.to_bytes(),
                    operation=f"publish event {event.event_id}",
                    on_retry=lambda attempt, e: safe_increment(publish_retry_counter, topic=self.topic),
                )
        except RetryExhaustedError as e:
            raise PublishError(str(e), topic=self.topic, event_id=event.event_id) from e

    def produce(
        self,
        mode: ProducerMode,
        rate_or_count: float,
        duration: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProduceReport:
        """
        Run the producer.

        Args:
            mode: streaming or batch
            rate_or_count: events/second (streaming) or number of events (batch)
            duration: wall-clock bound in seconds (streaming only)
            cancel_token: optional early stop, checked between events
        """
        mode = ProducerMode(mode)
        if mode is ProducerMode.STREAMING:
            if duration is None or duration <= 0:
                raise ValueError("streaming mode requires a positive duration")
            return self.stream(float(rate_or_count), duration, cancel_token)
        return self.batch(int(rate_or_count), cancel_token)

    def batch(self, num_events: int, cancel_token: Optional[CancellationToken] = None) -> ProduceReport:
        if num_events < 1:
            raise ValueError("num_events must be >= 1")

        report = ProduceReport(mode=ProducerMode.BATCH, requested=num_events)
        start = self.clock()
        logger.info(f"Batch producing {num_events} events to {self.topic} (source: {self.sampler.source})")

        for _ in range(num_events):
            if cancel_token is not None and cancel_token.is_cancelled:
                report.cancelled = True
                break
            if not self._send_one(report):
                break
            if report.produced % 10 == 0:
                logger.info(f"Produced {report.produced}/{num_events} events")

        self.broker_flush()
        report.elapsed_seconds = self.clock() - start
        self._log_report(report)
        return report

    def stream(
        self,
        rate: float,
        duration: float,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProduceReport:
        if rate <= 0:
            raise ValueError("rate must be > 0")

        interval = 1.0 / rate
        report = ProduceReport(mode=ProducerMode.STREAMING, requested=int(math.ceil(rate * duration)))
        start = self.clock()
        deadline = start + duration
        logger.info(
            f"Streaming events to {self.topic} at {rate:g}/sec for {duration:g}s "
            f"(source: {self.sampler.source})"
        )

        index = 0
        while True:
            # Fixed schedule so publish latency does not accumulate drift
            scheduled = start + index * interval
            if scheduled >= deadline:
                break

            wait = scheduled - self.clock()
            if wait > 0:
                if cancel_token is not None:
                    if cancel_token.wait(wait):
                        report.cancelled = True
                        break
                else:
                    self.sleep(wait)
            if cancel_token is not None and cancel_token.is_cancelled:
                report.cancelled = True
                break

            if not self._send_one(report):
                break
            index += 1

            if report.produced % 10 == 0:
                elapsed = self.clock() - start
                logger.info(f"Streamed {report.produced} events ({elapsed:.0f}s elapsed)")

        self.broker_flush()
        report.elapsed_seconds = self.clock() - start
        self._log_report(report)
        return report

    def _send_one(self, report: ProduceReport) -> bool:
        event = self.sampler.sample()
        try:
            self.publish(event)
        except PublishError as e:
            report.aborted = True
            report.error = e.message
            safe_increment(events_produced_counter, mode=report.mode.value, status="failed")
            logger.error(f"Aborting after {report.produced} events: {e.message}")
            return False
        report.produced += 1
        safe_increment(events_produced_counter, mode=report.mode.value, status="success")
        return True

    def broker_flush(self) -> None:
        flush = getattr(self.broker, "flush", None)
        if flush is not None:
            flush()

    def _log_report(self, report: ProduceReport) -> None:
        logger.info("=" * 60)
        logger.info(f"Producer finished ({report.mode.value})")
        logger.info(f"  Produced: {report.produced}" + (f"/{report.requested}" if report.requested else ""))
        logger.info(f"  Elapsed: {report.elapsed_seconds:.1f}s")
        if report.cancelled:
            logger.info("  Stopped early on cancellation")
        if report.aborted:
            logger.error(f"  ABORTED: {report.error}")
        logger.info("=" * 60)
