"""
Unified Configuration for the Churn Scoring Stream
==================================================

Centralized, type-safe configuration using Pydantic Settings.
All environment variables are loaded once at startup and validated.

Usage:
    from churn_stream.core.config import get_settings

    settings = get_settings()

    # Broker settings
    servers = settings.kafka.bootstrap_servers

    # Per-component settings
    interval = settings.consumer.poll_interval
    mode = settings.producer.mode
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Well-known topics
INPUT_TOPIC = "churn_predictions"
SCORED_TOPIC = "churn_predictions_scored"


class ProducerMode(str, Enum):
    """Recognized producer modes."""

    STREAMING = "streaming"
    BATCH = "batch"


# =============================================================================
# KAFKA SETTINGS (broker connection and well-known topics)
# =============================================================================

class KafkaSettings(BaseSettings):
    """Broker connection and topic layout."""

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "churn-stream"
    request_timeout_ms: int = Field(default=30000, ge=1000)

    # Topics
    input_topic: str = INPUT_TOPIC
    scored_topic: str = SCORED_TOPIC
    partitions: int = Field(default=1, ge=1)
    replication_factor: int = Field(default=1, ge=1)

    # Seconds to wait for a publish acknowledgement
    publish_timeout: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(env_file=".env", env_prefix="KAFKA_", extra="ignore")


# =============================================================================
# PRODUCER SETTINGS
# =============================================================================

class ProducerSettings(BaseSettings):
    """Event producer configuration."""

    mode: ProducerMode = ProducerMode.STREAMING

    # Streaming mode: events per second for `duration` seconds
    rate: float = Field(default=1.0, gt=0, le=10000)
    duration: float = Field(default=300.0, gt=0)

    # Batch mode: fixed event count
    num_events: int = Field(default=100, ge=1)

    # Raw customer CSV to sample from (synthetic customers when unset)
    data_path: Optional[str] = None
    seed: Optional[int] = None

    model_config = SettingsConfigDict(env_file=".env", env_prefix="PRODUCER_", extra="ignore")


# =============================================================================
# CONSUMER SETTINGS
# =============================================================================

class ConsumerSettings(BaseSettings):
    """Batch and continuous consumer configuration."""

    group_id: str = "churn-scoring"

    # Continuous mode: pause between poll cycles
    poll_interval: float = Field(default=5.0, ge=0)
    # Upper bound on a single blocking poll
    poll_timeout: float = Field(default=1.0, gt=0, le=60)
    # Batch mode: no new message for this long means end of log
    quiescence_timeout: float = Field(default=10.0, gt=0)
    max_poll_records: int = Field(default=500, ge=1, le=10000)

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CONSUMER_", extra="ignore")


# =============================================================================
# RETRY SETTINGS (shared by producer, consumers and topic admin)
# =============================================================================

class RetrySettings(BaseSettings):
    """Bounded exponential backoff budget."""

    max_attempts: int = Field(default=5, ge=1, le=20)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    jitter: float = Field(default=0.1, ge=0)

    model_config = SettingsConfigDict(env_file=".env", env_prefix="RETRY_", extra="ignore")

    @model_validator(mode="after")
    def _check_delays(self) -> "RetrySettings":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


# =============================================================================
# MODEL SETTINGS (MLflow artifact)
# =============================================================================

class ModelSettings(BaseSettings):
    """Model artifact location."""

    tracking_uri: str = "http://localhost:5001"
    name: str = "churn-classifier"
    version: str = "latest"
    # Explicit artifact URI (local directory, runs:/..., models:/...) wins over name/version
    uri: Optional[str] = None
    # Overrides the decision threshold stored in the feature contract
    threshold: Optional[float] = Field(default=None, ge=0, le=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MODEL_",
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    @property
    def model_uri(self) -> str:
        """Resolved artifact URI for the configured version."""
        if self.uri:
            return self.uri
        return f"models:/{self.name}/{self.version}"


# =============================================================================
# AGGREGATE
# =============================================================================

class Settings(BaseModel):
    """All settings, loaded once per process."""

    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    producer: ProducerSettings = Field(default_factory=ProducerSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    model: ModelSettings = Field(default_factory=ModelSettings)

    model_config = {"protected_namespaces": ()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings singleton
    """
    return Settings()
