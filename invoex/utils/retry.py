"""
Bounded retry with exponential backoff

Only transient failures are retried: lost or locked database connections,
network transport errors and throttled or unavailable upstream services.
Anything else propagates on the first attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from invoex.exceptions import PosPlatformError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Retry configuration"""
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds, doubled per attempt
    max_delay: float = 8.0  # seconds

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RetryConfig':
        data = data or {}
        return cls(
            max_attempts=int(data.get('max_attempts', cls.max_attempts)),
            base_delay=float(data.get('base_delay', cls.base_delay)),
            max_delay=float(data.get('max_delay', cls.max_delay))
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, PosPlatformError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    description: str = 'operation'
) -> T:
    """
    Await ``operation()`` until it succeeds or the attempt budget is spent

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        config: Attempt budget and backoff
        is_retryable: Predicate selecting errors worth another attempt
        description: Used in log messages

    Returns:
        The operation's result; the last error is re-raised when attempts run out
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= config.max_attempts:
                if attempt > 1:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{config.max_attempts}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
