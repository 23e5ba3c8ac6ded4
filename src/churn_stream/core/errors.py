"""
Standardized Error Handling
===========================

One exception hierarchy for the producer, both consumers, the scoring engine
and topic administration.

Usage:
    from churn_stream.core.errors import SchemaMismatchError, BrokerUnavailableError

    raise SchemaMismatchError("Event does not match contract", missing=["Age"])

Handling (per error class):
    BrokerUnavailableError   fatal at startup, retried mid-run
    SchemaMismatchError      per message: skip, report, commit
    ModelLoadError           fatal, process refuses to start
    PublishError             retried per message, then permanently failed
    TopicSpecConflictError   fatal to the admin operation only
    ScoringError             per message: permanently failed
"""

from typing import Any, Dict, List, Optional


class ChurnStreamError(Exception):
    """Base error class."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class BrokerUnavailableError(ChurnStreamError):
    """Broker could not be reached."""

    def __init__(self, message: str = "Broker unavailable", bootstrap_servers: str = None, **details):
        if bootstrap_servers:
            details["bootstrap_servers"] = bootstrap_servers
        super().__init__(message=message, error_code="BROKER_UNAVAILABLE", details=details)


class SchemaMismatchError(ChurnStreamError):
    """Event is malformed or incompatible with the model's feature contract."""

    def __init__(
        self,
        message: str = "Event does not match feature schema",
        missing: Optional[List[str]] = None,
        invalid: Optional[Dict[str, str]] = None,
        **details,
    ):
        self.missing = list(missing or [])
        self.invalid = dict(invalid or {})
        if self.missing:
            details["missing"] = self.missing
        if self.invalid:
            details["invalid"] = self.invalid
        super().__init__(message=message, error_code="SCHEMA_MISMATCH", details=details)


class ModelLoadError(ChurnStreamError):
    """Model artifact could not be loaded."""

    def __init__(self, message: str = "Model could not be loaded", model_uri: str = None, **details):
        if model_uri:
            details["model_uri"] = model_uri
        super().__init__(message=message, error_code="MODEL_LOAD_FAILURE", details=details)


class PublishError(ChurnStreamError):
    """A record was not acknowledged by the broker."""

    def __init__(self, message: str = "Publish failed", topic: str = None, **details):
        if topic:
            details["topic"] = topic
        super().__init__(message=message, error_code="PUBLISH_FAILURE", details=details)


class TopicSpecConflictError(ChurnStreamError):
    """An existing topic does not match the requested spec."""

    def __init__(self, message: str = "Topic spec conflict", topic: str = None, **details):
        if topic:
            details["topic"] = topic
        super().__init__(message=message, error_code="TOPIC_SPEC_CONFLICT", details=details)


class ScoringError(ChurnStreamError):
    """The model failed on a valid event or returned an invalid score."""

    def __init__(self, message: str = "Scoring failed", event_id: str = None, **details):
        if event_id:
            details["event_id"] = event_id
        super().__init__(message=message, error_code="SCORING_FAILURE", details=details)


class RetryExhaustedError(ChurnStreamError):
    """A retried operation failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            message=f"{operation} failed after {attempts} attempts: {last_error}",
            error_code="RETRY_EXHAUSTED",
            details={"operation": operation, "attempts": attempts},
        )
