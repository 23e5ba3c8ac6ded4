"""
MLflow Model Loader
===================

Loads the churn classifier and its feature contract from MLflow, once per
process.

The artifact directory holds the scikit-learn model (MLflow sklearn flavor) and
`feature_contract.json`, written by the training pipeline next to it:

    {
        "model_version": "3",
        "schema_version": "1.0.0",
        "feature_order": ["CreditScore", "Geography", ...],
        "feature_types": {"CreditScore": "numeric", "Geography": "categorical", ...},
        "category_mappings": {"Geography": {"France": 0, "Germany": 1, "Spain": 2}, ...},
        "threshold": 0.5
    }

Any failure while loading raises ModelLoadError; consumers refuse to start.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import mlflow
import mlflow.artifacts
import mlflow.sklearn
import numpy as np
from mlflow.tracking import MlflowClient

from churn_stream.core.config import ModelSettings
from churn_stream.core.errors import ModelLoadError

logger = logging.getLogger(__name__)

CONTRACT_FILE = "feature_contract.json"
UNKNOWN_CATEGORY = "__unknown__"

NUMERIC = "numeric"
CATEGORICAL = "categorical"


@dataclass
class FeatureContract:
    """
    Feature schema the model was trained on.

    Provides feature_order, per-feature types and categorical encoders.
    """

    feature_order: List[str]
    feature_types: Dict[str, str] = field(default_factory=dict)
    category_mappings: Dict[str, Dict[str, int]] = field(default_factory=dict)
    threshold: float = 0.5
    model_version: Optional[str] = None
    schema_version: str = "1.0.0"

    def __post_init__(self):
        if not self.feature_order:
            raise ValueError("feature contract has an empty feature_order")
        for name in self.feature_order:
            self.feature_types.setdefault(name, CATEGORICAL if name in self.category_mappings else NUMERIC)
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureContract":
        return cls(
            feature_order=list(data.get("feature_order", [])),
            feature_types=dict(data.get("feature_types", {})),
            category_mappings={k: dict(v) for k, v in data.get("category_mappings", {}).items()},
            threshold=float(data.get("threshold", 0.5)),
            model_version=data.get("model_version"),
            schema_version=data.get("schema_version", "1.0.0"),
        )

    @classmethod
    def load(cls, path: str) -> "FeatureContract":
        """Load contract from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def is_categorical(self, name: str) -> bool:
        return self.feature_types.get(name) == CATEGORICAL

    def knows_category(self, name: str, value: str) -> bool:
        mapping = self.category_mappings.get(name, {})
        return value in mapping or UNKNOWN_CATEGORY in mapping

    def encode_category(self, name: str, value: str) -> int:
        """Encode a categorical value using the contract's mappings."""
        mapping = self.category_mappings[name]
        if value in mapping:
            return mapping[value]
        return mapping[UNKNOWN_CATEGORY]


@dataclass
class ModelArtifact:
    """Loaded model and contract. Shared read-only by every scoring call."""

    model: Any
    contract: FeatureContract
    version: str
    model_uri: str = ""
    threshold: Optional[float] = None

    def __post_init__(self):
        if self.threshold is None:
            self.threshold = self.contract.threshold
        classes = list(getattr(self.model, "classes_", [0, 1]))
        # Column of predict_proba holding the churn (positive) class
        self._positive_index = classes.index(1) if 1 in classes else len(classes) - 1

    def predict(self, row: np.ndarray) -> Tuple[float, bool]:
        """Score one encoded feature row."""
        proba = self.model.predict_proba(np.asarray(row, dtype=float).reshape(1, -1))
        probability = float(proba[0][self._positive_index])
        return probability, probability >= self.threshold


class ModelLoader:
    """
    Loads the churn model from MLflow (registry name/version or explicit URI).
    """

    def __init__(self, config: ModelSettings):
        self.config = config
        self._mlflow_client: Optional[MlflowClient] = None

    @property
    def mlflow_client(self) -> MlflowClient:
        """Lazy initialize MLflow client."""
        if self._mlflow_client is None:
            mlflow.set_tracking_uri(self.config.tracking_uri)
            self._mlflow_client = MlflowClient()
            logger.info(f"MLflow client connected: {self.config.tracking_uri}")
        return self._mlflow_client

    def resolve_uri(self, version: Optional[str] = None) -> str:
        if not version or version == self.config.version:
            return self.config.model_uri
        return self.config.model_copy(update={"version": version}).model_uri

    def _resolve_version(self, version: str, contract: FeatureContract) -> str:
        """Concrete registry version for `latest`, else the requested one."""
        if self.config.uri:
            return contract.model_version or version
        if version != "latest":
            return version
        try:
            versions = self.mlflow_client.search_model_versions(f"name='{self.config.name}'")
            if versions:
                return str(max(int(v.version) for v in versions))
        except Exception as e:
            logger.debug(f"Could not resolve latest version of {self.config.name}: {e}")
        return contract.model_version or version

    def load(self, version: Optional[str] = None) -> ModelArtifact:
        """
        Load a model and its feature contract.

        Args:
            version: Registry version or alias (defaults to configured version)

        Returns:
            ModelArtifact ready for scoring

        Raises:
            ModelLoadError: artifact missing, unreadable, or without a contract
        """
        version = version or self.config.version
        model_uri = self.resolve_uri(version)
        logger.info(f"Loading model: {model_uri}")

        mlflow.set_tracking_uri(self.config.tracking_uri)
        try:
            local_dir = mlflow.artifacts.download_artifacts(artifact_uri=model_uri)
            model = mlflow.sklearn.load_model(local_dir)
            contract = FeatureContract.load(os.path.join(local_dir, CONTRACT_FILE))
        except Exception as e:
            logger.error(f"Failed to load {model_uri}: {e}")
            raise ModelLoadError(f"Failed to load {model_uri}: {e}", model_uri=model_uri) from e

        if not hasattr(model, "predict_proba"):
            raise ModelLoadError(
                f"Model at {model_uri} does not expose predict_proba",
                model_uri=model_uri,
            )

        artifact = ModelArtifact(
            model=model,
            contract=contract,
            version=self._resolve_version(version, contract),
            model_uri=model_uri,
            threshold=self.config.threshold,
        )
        logger.info(
            f"Loaded model {model_uri} (version={artifact.version}, "
            f"schema_version={contract.schema_version}, features={len(contract.feature_order)}, "
            f"threshold={artifact.threshold})"
        )
        return artifact
