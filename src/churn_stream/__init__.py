"""
Churn Scoring Stream
====================

Streams customer events through Kafka, scores them with the churn model and
publishes predictions for downstream analytics.

Packages:
- core: configuration, errors, retry policy, metrics
- serving: model loading and scoring
- streaming: broker session, topics, producer, consumers, analytics
"""

__version__ = "0.1.0"
