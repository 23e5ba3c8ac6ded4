"""
Streaming Module
================

Broker session, message schemas, topic lifecycle, the event producer, the
scoring consumers and scored-topic analytics.

Import from the submodules directly:
    from churn_stream.streaming.broker import KafkaBroker
    from churn_stream.streaming.consumer import BatchConsumer
"""
