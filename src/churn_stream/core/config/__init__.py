"""
Core Configuration Module
=========================

Centralized, type-safe configuration using Pydantic Settings.

Usage:
    from churn_stream.core.config import get_settings

    settings = get_settings()
    topic = settings.kafka.input_topic
"""

from churn_stream.core.config.settings import (
    INPUT_TOPIC,
    SCORED_TOPIC,
    ConsumerSettings,
    KafkaSettings,
    ModelSettings,
    ProducerMode,
    ProducerSettings,
    RetrySettings,
    Settings,
    get_settings,
)

__all__ = [
    "INPUT_TOPIC",
    "SCORED_TOPIC",
    "ConsumerSettings",
    "KafkaSettings",
    "ModelSettings",
    "ProducerMode",
    "ProducerSettings",
    "RetrySettings",
    "Settings",
    "get_settings",
]
