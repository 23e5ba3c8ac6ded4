"""
Bounded Retry Policy
====================

Exponential backoff with jitter, shared by the producer, both consumers and
topic administration so every call site retries the same way.

    delay(attempt) = min(max_delay, base_delay * 2 ** (attempt - 1)) + uniform(0, jitter)

Usage:
    policy = RetryPolicy.from_settings(settings.retry)
    ack = policy.call(broker.produce, topic, key, value, operation="publish")
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type

from kafka.errors import KafkaError

from churn_stream.core.errors import BrokerUnavailableError, PublishError, RetryExhaustedError

logger = logging.getLogger(__name__)


# Transient failures worth another attempt
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    KafkaError,
    BrokerUnavailableError,
    PublishError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.1
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, retry_settings, **overrides) -> "RetryPolicy":
        """Build a policy from RetrySettings."""
        params = {
            "max_attempts": retry_settings.max_attempts,
            "base_delay": retry_settings.base_delay,
            "max_delay": retry_settings.max_delay,
            "jitter": retry_settings.jitter,
        }
        params.update(overrides)
        return cls(**params)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        backoff = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            backoff += self.rng.uniform(0, self.jitter)
        return backoff

    def call(
        self,
        func: Callable[..., Any],
        *args,
        operation: Optional[str] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs,
    ) -> Any:
        """
        Call `func` until it succeeds or the attempt budget is spent.

        Errors outside `retry_on` propagate immediately.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
        """
        operation = operation or getattr(func, "__name__", "operation")

        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{operation} failed after {attempt} attempts: {e}")
                    raise RetryExhaustedError(operation, attempt, e) from e

                delay = self.delay_for(attempt)
                logger.warning(
                    f"{operation} attempt {attempt}/{self.max_attempts} failed: {e}, "
                    f"retrying in {delay:.2f}s..."
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                self.sleep(delay)
