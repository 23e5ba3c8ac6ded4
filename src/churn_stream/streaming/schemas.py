"""
Streaming Message Schemas
=========================

Records that cross the broker. Both message types are frozen: an event is
never changed after it is produced and a prediction is never changed after it
is scored.

MESSAGE FORMAT (churn_predictions):
    {
        "event_id": "uuid-string",
        "customer_id": "15634602",
        "generated_at": "2025-12-17T10:30:00+00:00",
        "features": {"CreditScore": 619, "Geography": "France", ...}
    }

MESSAGE FORMAT (churn_predictions_scored):
    {
        "event_id": "uuid-string",
        "customer_id": "15634602",
        "churn_probability": 0.2431,
        "churn_label": false,
        "model_version": "3",
        "scored_at": "2025-12-17T10:30:01+00:00"
    }
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from churn_stream.core.errors import SchemaMismatchError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_json(value: bytes) -> Dict[str, Any]:
    """Decode a UTF-8 JSON object, raising SchemaMismatchError otherwise."""
    # ValueError covers JSONDecodeError, UnicodeDecodeError and the int digit limit
    try:
        data = json.loads(value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else value)
    except (ValueError, TypeError, RecursionError) as e:
        raise SchemaMismatchError(f"Message is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaMismatchError(f"Message must be a JSON object, got {type(data).__name__}")
    return data


@dataclass(frozen=True)
class CustomerEvent:
    """One customer activity event on the input topic."""

    event_id: str
    customer_id: str
    features: Mapping[str, Any]
    generated_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        # Read-only view so the event stays immutable
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))

    @classmethod
    def create(cls, customer_id: str, features: Mapping[str, Any]) -> "CustomerEvent":
        """New event with a fresh event_id."""
        return cls(event_id=str(uuid.uuid4()), customer_id=str(customer_id), features=features)

    @property
    def key(self) -> bytes:
        return self.customer_id.encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "customer_id": self.customer_id,
            "generated_at": self.generated_at,
            "features": dict(self.features),
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, value: bytes) -> "CustomerEvent":
        """
        Parse an input-topic message.

        Raises:
            SchemaMismatchError: malformed JSON or missing envelope fields
        """
        data = _decode_json(value)

        missing = [name for name in ("event_id", "customer_id", "features") if data.get(name) in (None, "")]
        if missing:
            raise SchemaMismatchError("Event envelope incomplete", missing=missing)
        if not isinstance(data["features"], dict):
            raise SchemaMismatchError(
                "Event features must be an object",
                invalid={"features": type(data["features"]).__name__},
            )

        return cls(
            event_id=str(data["event_id"]),
            customer_id=str(data["customer_id"]),
            features=data["features"],
            generated_at=data.get("generated_at") or utc_now_iso(),
        )


@dataclass(frozen=True)
class ScoredPrediction:
    """Scoring result published to the scored topic."""

    event_id: str
    customer_id: str
    churn_probability: float
    churn_label: bool
    model_version: str
    scored_at: str = field(default_factory=utc_now_iso)

    @property
    def key(self) -> bytes:
        return self.customer_id.encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "customer_id": self.customer_id,
            "churn_probability": self.churn_probability,
            "churn_label": self.churn_label,
            "model_version": self.model_version,
            "scored_at": self.scored_at,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, value: bytes) -> "ScoredPrediction":
        data = _decode_json(value)
        try:
            return cls(
                event_id=str(data["event_id"]),
                customer_id=str(data["customer_id"]),
                churn_probability=float(data["churn_probability"]),
                churn_label=bool(data["churn_label"]),
                model_version=str(data.get("model_version", "unknown")),
                scored_at=data.get("scored_at") or utc_now_iso(),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise SchemaMismatchError(f"Invalid scored prediction: {e}") from e


@dataclass(frozen=True)
class TopicSpec:
    """Desired shape of a topic."""

    name: str
    partitions: int = 1
    replication_factor: int = 1

    def matches(self, other: "TopicSpec") -> bool:
        return (
            self.name == other.name
            and self.partitions == other.partitions
            and self.replication_factor == other.replication_factor
        )


@dataclass(frozen=True)
class ConsumerOffset:
    """
    Committed position of a consumer group.

    `offset` is the next offset to read (last processed offset + 1).
    """

    topic: str
    partition: int
    offset: int
    metadata: Optional[str] = None
