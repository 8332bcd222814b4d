"""Retry handler with exponential backoff for blocking asset operations.

Runs on the manager's construction workers, so waits are plain sleeps rather
than event-loop awaits.
"""

import random
import time
from typing import Any, Callable, Optional, Tuple, Type

import structlog

logger = structlog.get_logger("embedder_service.retry_handler")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(self, config: RetryConfig, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep

    def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Call ``func`` until it succeeds or attempts run out.

        Only ``retryable_exceptions`` are retried; anything else propagates
        on the first occurrence.
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.config.max_attempts):
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=self.config.max_attempts
                    )

                return result

            except self.config.retryable_exceptions as e:
                last_exception = e

                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                delay = self._calculate_delay(attempt)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                    error=str(e)
                )
                self._sleep(delay)

        if last_exception:
            raise last_exception
        raise RuntimeError("Retry logic error")

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        # 10% jitter to avoid synchronized retries
        if self.config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, 0.1)
