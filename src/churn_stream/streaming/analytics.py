"""
Scored-Topic Analytics
======================

Summary statistics over the predictions published to the scored topic.

The topic is read from the beginning without a consumer group, so analytics
never commits offsets and never disturbs the scoring consumers. Reading stops
once no record arrives within the quiescence timeout.

Duplicate event_ids are expected under at-least-once delivery and are
reported, not removed.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd
from kafka.errors import KafkaError

from churn_stream.core.config import ConsumerSettings
from churn_stream.core.errors import ChurnStreamError, SchemaMismatchError
from churn_stream.streaming.broker import Broker
from churn_stream.streaming.schemas import ScoredPrediction

logger = logging.getLogger(__name__)

QUANTILES = {"p25": 0.25, "p50": 0.50, "p75": 0.75, "p90": 0.90, "p99": 0.99}

# Churn-risk bands over churn_probability: [0, 0.3) low, [0.3, 0.7) medium, [0.7, 1] high
RISK_BAND_EDGES = [0.0, 0.3, 0.7, float("inf")]
RISK_BAND_LABELS = ["low", "medium", "high"]


@dataclass
class AnalyticsReport:
    """Aggregates over the scored topic."""

    topic: str
    total: int = 0
    distinct_events: int = 0
    duplicates: int = 0
    churned: int = 0
    churn_rate: Optional[float] = None
    probability: Dict[str, float] = field(default_factory=dict)
    risk_bands: Dict[str, int] = field(default_factory=dict)
    model_versions: Dict[str, int] = field(default_factory=dict)
    unreadable: int = 0
    window: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "total": self.total,
            "distinct_events": self.distinct_events,
            "duplicates": self.duplicates,
            "churned": self.churned,
            "churn_rate": self.churn_rate,
            "probability": dict(self.probability),
            "risk_bands": dict(self.risk_bands),
            "model_versions": dict(self.model_versions),
            "unreadable": self.unreadable,
            "window": self.window,
            "error": self.error,
        }

    def format_text(self) -> str:
        lines = ["=" * 60, f"Churn prediction analytics: {self.topic}", "=" * 60]
        if self.error:
            lines.append(f"ERROR: {self.error}")
            return "\n".join(lines)
        if self.window:
            lines.append(f"Window: last {self.window} predictions")
        lines.append(f"Predictions:      {self.total}")
        lines.append(f"Distinct events:  {self.distinct_events} ({self.duplicates} duplicate(s))")
        if self.unreadable:
            lines.append(f"Unreadable:       {self.unreadable}")
        if not self.total:
            lines.append("No predictions found")
            return "\n".join(lines)

        lines.append(f"Churn rate:       {self.churn_rate:.2%} ({self.churned} predicted churners)")
        lines.append("")
        lines.append("Churn probability:")
        for name, value in self.probability.items():
            lines.append(f"  {name:<6} {value:.4f}")
        lines.append("")
        lines.append("Risk bands:")
        for band, count in self.risk_bands.items():
            lines.append(f"  {band:<6} {count:>6} ({count / self.total:.1%})")
        lines.append("")
        lines.append("Model versions:")
        for version, count in self.model_versions.items():
            lines.append(f"  {version:<10} {count:>6}")
        lines.append("=" * 60)
        return "\n".join(lines)


def summarize(frame: pd.DataFrame, topic: str, window: Optional[int] = None) -> AnalyticsReport:
    """Compute the report from a frame of ScoredPrediction dicts."""
    report = AnalyticsReport(topic=topic, window=window)
    if window is not None:
        frame = frame.tail(window)
    if frame.empty:
        return report

    probabilities = frame["churn_probability"].astype(float)
    report.total = int(len(frame))
    report.distinct_events = int(frame["event_id"].nunique())
    report.duplicates = report.total - report.distinct_events
    report.churned = int(frame["churn_label"].astype(bool).sum())
    report.churn_rate = report.churned / report.total

    report.probability = {
        "min": float(probabilities.min()),
        "max": float(probabilities.max()),
        "mean": float(probabilities.mean()),
        "std": float(probabilities.std(ddof=0)),
    }
    for name, q in QUANTILES.items():
        report.probability[name] = float(probabilities.quantile(q))

    bands = pd.cut(probabilities, bins=RISK_BAND_EDGES, labels=RISK_BAND_LABELS, right=False)
    counts = bands.value_counts()
    report.risk_bands = {label: int(counts.get(label, 0)) for label in RISK_BAND_LABELS}

    report.model_versions = {
        str(version): int(count)
        for version, count in frame["model_version"].value_counts().sort_index().items()
    }
    return report


class ScoredTopicAnalytics:
    """Reads the scored topic and summarizes it."""

    def __init__(
        self,
        broker: Broker,
        topic: str,
        consumer_config: ConsumerSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.topic = topic
        self.config = consumer_config
        self.clock = clock

    def read(self) -> Tuple[List[Dict[str, Any]], int]:
        """All predictions currently on the topic, plus the count of unreadable records."""
        records: List[Dict[str, Any]] = []
        unreadable = 0
        consumer = self.broker.consumer(self.topic, None, max_poll_records=self.config.max_poll_records)
        try:
            last_message_at = self.clock()
            while True:
                messages = consumer.poll(self.config.poll_timeout)
                if not messages:
                    if self.clock() - last_message_at >= self.config.quiescence_timeout:
                        break
                    continue
                last_message_at = self.clock()
                for message in messages:
                    try:
                        records.append(ScoredPrediction.from_bytes(message.value).to_dict())
                    except SchemaMismatchError as e:
                        unreadable += 1
                        logger.warning(f"Unreadable prediction at {message.partition}:{message.offset}: {e}")
        finally:
            consumer.close()
        return records, unreadable

    def collect(self, window: Optional[int] = None) -> AnalyticsReport:
        """
        Build the analytics report.

        Broker failures and a missing topic are reported in `report.error`.
        """
        if window is not None and window < 1:
            raise ValueError("window must be >= 1")

        try:
            if self.topic not in self.broker.list_topics():
                return AnalyticsReport(topic=self.topic, window=window, error=f"Topic {self.topic} does not exist")
            records, unreadable = self.read()
        except (ChurnStreamError, KafkaError) as e:
            logger.error(f"Analytics read of {self.topic} failed: {e}")
            return AnalyticsReport(topic=self.topic, window=window, error=str(e))

        frame = pd.DataFrame.from_records(
            records,
            columns=["event_id", "customer_id", "churn_probability", "churn_label", "model_version", "scored_at"],
        )
        report = summarize(frame, self.topic, window)
        report.unreadable = unreadable
        logger.info(f"Analytics over {report.total} prediction(s) from {self.topic}")
        return report
