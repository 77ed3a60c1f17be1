"""Error recovery mechanisms for transient failures."""

import time
import random
from abc import ABC, abstractmethod
from typing import Callable, Any, Optional, List, Type
from functools import wraps
from datetime import datetime, timedelta

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay in seconds for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Execute function with retry logic."""
    recovery_logger = ErrorRecoveryLogger(func.__name__)
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not config.should_retry(e, attempt):
                recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                raise

            recovery_logger.log_recovery_attempt(func.__name__, e, attempt, config.max_attempts)
            time.sleep(config.get_delay(attempt))

    recovery_logger.log_recovery_failure(func.__name__, last_exception, config.max_attempts)
    raise last_exception


class RetryPolicy(ABC):
    """Decides whether a failed node is retried later.

    Policies never sleep. A retry is expressed as a wake time; the engine
    suspends the execution on the failed node and the scheduler resumes it.
    """

    @abstractmethod
    def next_attempt_at(self, error: Exception, retry_count: int, now: datetime) -> Optional[datetime]:
        """
        Compute when the failed node should run again.

        Args:
            error: Exception raised by the node executor
            retry_count: Retries already spent by the execution
            now: Current time

        Returns:
            Wake time for the retry, or None when the failure is final
        """


class NoRetryPolicy(RetryPolicy):
    """Every node failure is final."""

    def next_attempt_at(self, error: Exception, retry_count: int, now: datetime) -> Optional[datetime]:
        return None


class BackoffRetryPolicy(RetryPolicy):
    """Retries recoverable node failures with exponential backoff."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig(jitter=False)
        self.recovery_logger = ErrorRecoveryLogger("node_retry")

    def next_attempt_at(self, error: Exception, retry_count: int, now: datetime) -> Optional[datetime]:
        attempt = retry_count + 1
        if not self.config.should_retry(error, attempt):
            self.recovery_logger.log_recovery_failure("node_execution", error, attempt)
            return None

        self.recovery_logger.log_recovery_attempt("node_execution", error, attempt, self.config.max_attempts)
        return now + timedelta(seconds=self.config.get_delay(attempt))
