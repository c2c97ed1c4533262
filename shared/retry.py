"""
Retry with backoff for outbound calls made by rule actions.
"""

import asyncio
import functools
import random
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


class RetryError(Exception):
    """Every permitted attempt failed."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None,
                       deadline: Optional[float] = None) -> Callable:
    """Retry an async function when it raises one of ``exceptions``.

    ``deadline`` is a ``time.monotonic()`` instant; no attempt is started
    once the next backoff would run past it, and the last error is raised
    as ``RetryError`` with the number of attempts actually made.
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = getattr(func, "__name__", "call")
        logger = get_logger(f"rules.retry.{name}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    delay = _calculate_delay(attempt, config)
                    out_of_time = deadline is not None and time.monotonic() + delay >= deadline
                    if attempt >= config.max_attempts or out_of_time:
                        logger.warning(
                            "Giving up after failed attempts",
                            attempts=attempt,
                            max_attempts=config.max_attempts,
                            out_of_time=out_of_time,
                            error=str(e)
                        )
                        raise RetryError(
                            f"{name} failed after {attempt} attempts: {e}",
                            last_exception=e,
                            attempts=attempt
                        ) from e

                    logger.debug("Attempt failed, backing off", attempt=attempt, delay=delay, error=str(e))
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Retry succeeded", attempt=attempt)
                return result

        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before attempt ``attempt + 1``, capped at ``max_delay``."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        spread = delay * 0.1
        delay += random.uniform(-spread, spread)

    return max(0.0, delay)
