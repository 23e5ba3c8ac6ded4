"""
Scoring Engine
==============

Transforms one CustomerEvent into one ScoredPrediction:
1. Schema validation against the feature contract
2. Categorical encoding in contract feature order
3. Model inference
4. Telemetry recording

Scoring is a pure function of (event, loaded model): the same event scored
twice with the same model version yields the same probability and label.
"""

import logging
import math
from numbers import Real
from typing import Any, Dict, List, Mapping

import numpy as np

from churn_stream.core.errors import SchemaMismatchError, ScoringError
from churn_stream.core.monitoring import (
    Timer,
    churn_probability_histogram,
    safe_observe,
    scoring_latency_histogram,
)
from churn_stream.serving.model_loader import ModelArtifact
from churn_stream.streaming.schemas import CustomerEvent, ScoredPrediction

logger = logging.getLogger(__name__)


class ScoringEngine:
    """Validates and scores events with one loaded model."""

    def __init__(self, artifact: ModelArtifact):
        self.artifact = artifact
        self.contract = artifact.contract
        # Unknown fields are ignored but tracked for drift detection
        self._unknown_fields_seen: Dict[str, int] = {}

    @property
    def model_version(self) -> str:
        return self.artifact.version

    def validate(self, features: Mapping[str, Any]) -> None:
        """
        Check features against the contract without coercing anything.

        Raises:
            SchemaMismatchError: missing required features or wrongly typed values
        """
        missing: List[str] = []
        invalid: Dict[str, str] = {}

        for name in self.contract.feature_order:
            value = features.get(name)
            if value is None:
                missing.append(name)
                continue

            if self.contract.is_categorical(name):
                if not isinstance(value, str):
                    invalid[name] = f"expected string category, got {type(value).__name__}"
                elif not self.contract.knows_category(name, value):
                    invalid[name] = f"unknown category {value!r}"
            else:
                if isinstance(value, bool) or not isinstance(value, Real):
                    invalid[name] = f"expected number, got {type(value).__name__}"
                    continue
                try:
                    finite = math.isfinite(float(value))
                except OverflowError:
                    invalid[name] = "integer out of float range"
                    continue
                if not finite:
                    invalid[name] = f"non-finite value {value}"

        for name in features:
            if name not in self.contract.feature_types:
                self._unknown_fields_seen[name] = self._unknown_fields_seen.get(name, 0) + 1
                if self._unknown_fields_seen[name] == 1:
                    logger.warning(f"SCHEMA_DRIFT: Unknown field detected: {name}")

        if missing or invalid:
            raise SchemaMismatchError(
                f"Event does not match feature contract v{self.contract.schema_version}",
                missing=missing,
                invalid=invalid,
            )

    def build_row(self, features: Mapping[str, Any]) -> np.ndarray:
        """Encoded feature vector in contract order."""
        row = []
        for name in self.contract.feature_order:
            value = features[name]
            if self.contract.is_categorical(name):
                row.append(float(self.contract.encode_category(name, value)))
            else:
                row.append(float(value))
        return np.array(row, dtype=float)

    def score(self, event: CustomerEvent) -> ScoredPrediction:
        """
        Score one event.

        Raises:
            SchemaMismatchError: event incompatible with the model (skip)
            ScoringError: model failed or returned an invalid probability (permanent)
        """
        with Timer(scoring_latency_histogram, model_version=self.model_version):
            self.validate(event.features)
            row = self.build_row(event.features)

            try:
                probability, label = self.artifact.predict(row)
            except Exception as e:
                raise ScoringError(f"Model inference failed: {e}", event_id=event.event_id) from e

            if not (0.0 <= probability <= 1.0) or math.isnan(probability):
                raise ScoringError(
                    f"Model returned probability outside [0, 1]: {probability}",
                    event_id=event.event_id,
                )

        safe_observe(churn_probability_histogram, probability, model_version=self.model_version)

        return ScoredPrediction(
            event_id=event.event_id,
            customer_id=event.customer_id,
            churn_probability=probability,
            churn_label=bool(label),
            model_version=self.model_version,
        )

    def get_schema_stats(self) -> Dict[str, Any]:
        """Schema drift statistics for monitoring."""
        return {
            "schema_version": self.contract.schema_version,
            "unknown_fields_seen": dict(self._unknown_fields_seen),
        }
