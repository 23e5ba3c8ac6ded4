"""Integration tests for the churn scoring stream.

These tests require a running Kafka broker and should be run with:
    pytest tests/integration -v -m integration

Prerequisites:
    a broker reachable at INTEGRATION_KAFKA_BOOTSTRAP_SERVERS (default localhost:9092)
"""
