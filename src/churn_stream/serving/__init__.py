"""
Model Serving
=============

Model artifact loading (MLflow) and the scoring engine.

Usage:
    from churn_stream.serving import ModelLoader, ScoringEngine

    artifact = ModelLoader(settings.model).load()
    engine = ScoringEngine(artifact)
    prediction = engine.score(event)
"""

from churn_stream.serving.model_loader import FeatureContract, ModelArtifact, ModelLoader
from churn_stream.serving.scoring import ScoringEngine

__all__ = [
    "FeatureContract",
    "ModelArtifact",
    "ModelLoader",
    "ScoringEngine",
]
