"""Tests for the blocking retry handler."""

import pytest

from app.pipelines.retry_handler import RetryConfig, RetryHandler


class Flaky:
    def __init__(self, failures, exc_type=ConnectionError):
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"attempt {self.calls} failed")
        return value * 2


def _handler(max_attempts=3, retryable=(ConnectionError,)):
    delays = []
    handler = RetryHandler(
        RetryConfig(max_attempts=max_attempts, base_delay=1.0, jitter=False, retryable_exceptions=retryable),
        sleep=delays.append,
    )
    return handler, delays


def test_succeeds_after_transient_failures():
    handler, delays = _handler()
    func = Flaky(failures=2)

    assert handler.execute_with_retry(func, 21, operation_name="flaky") == 42
    assert func.calls == 3
    assert delays == [1.0, 2.0]


def test_gives_up_after_max_attempts():
    handler, delays = _handler(max_attempts=2)
    func = Flaky(failures=5)

    with pytest.raises(ConnectionError, match="attempt 2"):
        handler.execute_with_retry(func, 1)

    assert func.calls == 2
    assert len(delays) == 1


def test_non_retryable_error_propagates_immediately():
    handler, delays = _handler()
    func = Flaky(failures=1, exc_type=ValueError)

    with pytest.raises(ValueError):
        handler.execute_with_retry(func, 1)

    assert func.calls == 1
    assert delays == []


def test_delay_is_capped_and_jittered():
    handler = RetryHandler(RetryConfig(base_delay=10.0, max_delay=15.0, jitter=True))

    for attempt in range(5):
        delay = handler._calculate_delay(attempt)
        assert 0.1 <= delay <= 16.5
