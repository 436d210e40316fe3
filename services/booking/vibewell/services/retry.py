"""
Retry-with-backoff executor.

Only transient failures are retried. Anything else, including every
PermanentFailure, propagates on the first occurrence.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from vibewell.obs.errors import PermanentFailure, RetryExhausted, TransientFailure
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics

logger = get_logger(__name__)

TRANSIENT_ERRORS = (
    TransientFailure,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    RedisConnectionError,
    RedisTimeoutError,
)

BACKOFF_STRATEGIES = ("linear", "exponential")


def is_transient(error: BaseException) -> bool:
    """Whether an error may succeed if the operation is attempted again."""
    if isinstance(error, PermanentFailure):
        return False
    return isinstance(error, TRANSIENT_ERRORS)


def is_timeout(error: BaseException) -> bool:
    return isinstance(error, (asyncio.TimeoutError, TimeoutError, RedisTimeoutError))


def backoff_delay(attempt: int, base_delay: float, backoff: str = "linear") -> float:
    """Delay before the attempt following ``attempt`` (1-based)."""
    if backoff == "exponential":
        return base_delay * (2 ** (attempt - 1))
    return base_delay * attempt


async def _attempt(operation: Callable[[], Any], timeout: Optional[float]) -> Any:
    if inspect.iscoroutinefunction(operation):
        call = operation()
    else:
        call = asyncio.to_thread(operation)
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout)


async def with_retry(
    operation: Callable[[], Any],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    backoff: str = "linear",
    timeout: Optional[float] = None,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Any:
    """
    Call ``operation`` until it succeeds or ``max_attempts`` is reached.

    Sync callables run in a worker thread so ``timeout`` can bound them.
    On exhaustion raises RetryExhausted carrying the last error.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if backoff not in BACKOFF_STRATEGIES:
        raise ValueError(f"Unknown backoff strategy: {backoff}")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await _attempt(operation, timeout)
        except Exception as e:
            if not is_transient(e):
                raise
            last_error = e

        if attempt == max_attempts:
            break

        delay = backoff_delay(attempt, base_delay, backoff)
        metrics.record_retry(operation_name)
        logger.warning(
            f"{operation_name} failed with transient error, retrying in {delay:.2f}s: {last_error!r}",
            extra={
                'attempt': attempt,
                'max_attempts': max_attempts,
                'error_type': type(last_error).__name__,
            },
        )
        if on_retry is not None:
            on_retry(attempt, last_error)
        await sleep(delay)

    logger.error(
        f"{operation_name} exhausted {max_attempts} attempts",
        extra={'attempt': max_attempts, 'max_attempts': max_attempts, 'error_type': type(last_error).__name__},
    )
    raise RetryExhausted(last_error, max_attempts, operation_name) from last_error
