"""
Retry mechanisms for resilient operations.

Two policies live here:

- ``retry_on_exception``: bounded retries with backoff, used for individual
  upstream calls.
- ``retry_forever``: fixed-delay retries that never give up, used for
  idempotent cache refreshes triggered by key expiration.
"""

import asyncio
import functools
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


DEFAULT_RETRY_FOREVER_DELAY = 5.0


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


class RetryCancelled(Exception):
    """Raised when a never-ending retry loop is stopped from outside."""
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def _callable_name(func: Callable) -> str:
    return getattr(func, "__name__", None) or type(func).__name__


def retry_on_exception(exceptions: tuple = (Exception,),
                      config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions.

    Exceptions not listed in ``exceptions`` propagate immediately.
    """

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{_callable_name(func)}")

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            "Retry succeeded",
                            attempt=attempt,
                            function=_callable_name(func)
                        )

                    return result

                except exceptions as e:
                    if attempt == config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            function=_callable_name(func),
                            error=str(e)
                        )
                        raise RetryError(
                            f"Function {_callable_name(func)} failed after {config.max_attempts} attempts",
                            last_exception=e,
                            attempts=config.max_attempts
                        ) from e

                    delay = _calculate_delay(attempt, config)

                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay=delay,
                        function=_callable_name(func),
                        error=str(e)
                    )

                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay between retry attempts."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def retry_forever(fn: Callable[..., Awaitable[Any]],
                        *args: Any,
                        delay: float = DEFAULT_RETRY_FOREVER_DELAY,
                        stop_event: Optional[asyncio.Event] = None,
                        on_failure: Optional[Callable[[int, Exception], None]] = None) -> Any:
    """Call ``fn(*args)`` until it succeeds, waiting ``delay`` seconds between attempts.

    There is no attempt limit and no backoff. The loop only ends early when
    ``stop_event`` is set, in which case ``RetryCancelled`` is raised; task
    cancellation propagates as usual.

    Args:
        fn: Coroutine function to call.
        *args: Positional arguments passed unchanged on every attempt.
        delay: Seconds to wait after each failed attempt.
        stop_event: Optional event signalling shutdown.
        on_failure: Optional hook called with ``(attempt, exception)`` after
            each failed attempt.

    Returns:
        The first successful result of ``fn``.
    """
    name = _callable_name(fn)
    logger = get_logger(f"retry.{name}")
    attempt = 0

    while True:
        if stop_event is not None and stop_event.is_set():
            raise RetryCancelled(f"Retry loop for {name} stopped", attempts=attempt)

        attempt += 1
        try:
            result = await fn(*args)
        except Exception as e:
            logger.warning(
                "Attempt failed, retrying after delay",
                attempt=attempt,
                delay=delay,
                function=name,
                error=str(e)
            )
            if on_failure is not None:
                on_failure(attempt, e)

            if stop_event is None:
                await asyncio.sleep(delay)
                continue

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            raise RetryCancelled(f"Retry loop for {name} stopped", attempts=attempt) from e

        if attempt > 1:
            logger.info("Retry succeeded", attempt=attempt, function=name)
        return result
