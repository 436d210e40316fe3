"""
Tests for the retry-with-backoff executor.
"""
import asyncio
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vibewell.obs.errors import PaymentDeclined, PermanentFailure, RetryExhausted, TransientFailure
from vibewell.services.retry import backoff_delay, is_timeout, is_transient, with_retry


class Flaky:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.calls = 0
        self.result = result

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


class TestClassification:
    """Test transient vs permanent error classification."""

    @pytest.mark.parametrize("error", [
        TransientFailure("gateway unavailable"),
        asyncio.TimeoutError(),
        ConnectionError("reset by peer"),
        RedisConnectionError("refused"),
    ])
    def test_transient_errors(self, error):
        assert is_transient(error) is True

    @pytest.mark.parametrize("error", [
        PermanentFailure("invalid card"),
        PaymentDeclined("declined"),
        ValueError("bad input"),
    ])
    def test_non_transient_errors(self, error):
        assert is_transient(error) is False

    def test_timeout_detection(self):
        assert is_timeout(asyncio.TimeoutError()) is True
        assert is_timeout(TransientFailure("x")) is False

    def test_backoff_strategies(self):
        assert [backoff_delay(n, 0.5) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]
        assert [backoff_delay(n, 0.5, "exponential") for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


class TestWithRetry:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleep):
        operation = Flaky(TransientFailure("503"), TransientFailure("503"))

        result = await with_retry(operation, max_attempts=3, base_delay=0.5, sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_last_error(self, sleep):
        last = TransientFailure("still down")
        operation = Flaky(TransientFailure("down"), TransientFailure("down"), last)

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(operation, max_attempts=3, base_delay=0.5, sleep=sleep, operation_name="charge")

        assert exc_info.value.last_error is last
        assert exc_info.value.attempts == 3
        assert operation.calls == 3
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, sleep):
        operation = Flaky(PermanentFailure("invalid card"))

        with pytest.raises(PermanentFailure):
            await with_retry(operation, max_attempts=3, sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exponential_backoff(self, sleep):
        operation = Flaky(TransientFailure("x"), TransientFailure("x"), TransientFailure("x"))

        await with_retry(operation, max_attempts=4, base_delay=0.1, backoff="exponential", sleep=sleep)

        assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, sleep):
        seen = []
        operation = Flaky(TransientFailure("x"))

        await with_retry(operation, sleep=sleep, on_retry=lambda attempt, error: seen.append(attempt))

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_async_operation(self, sleep):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 2:
                raise TransientFailure("x")
            return "done"

        assert await with_retry(operation, sleep=sleep) == "done"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_slow_attempts_time_out(self, sleep):
        def slow():
            time.sleep(0.2)
            return "late"

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(slow, max_attempts=2, timeout=0.02, sleep=sleep)

        assert is_timeout(exc_info.value.last_error)

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            await with_retry(Flaky(), max_attempts=0)
        with pytest.raises(ValueError):
            await with_retry(Flaky(), backoff="fibonacci")
