"""
Retry decorator for idempotent upstream reads.

Only reads are retried; the engine's upstream timeout still bounds the
whole call, retries included.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Optional, Callable, Awaitable, Tuple, Type

from shared.logging import get_logger


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff settings."""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based), capped, with 10% jitter."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(-delay * 0.1, delay * 0.1)
        return max(0.0, delay)


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Retry an async function on ``exceptions``, re-raising the last one."""
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger(f"gating.retry.{func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.error("Upstream read failed after retries", attempts=attempt, error=str(e))
                        raise
                    delay = config.delay_for(attempt)
                    logger.warning("Upstream read failed, retrying", attempt=attempt, delay=delay, error=str(e))
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
