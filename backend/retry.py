"""
Retry Utilities with Exponential Backoff

One reusable retry policy for idempotent operations (position close
persistence, read-only exchange queries). Never wrap buy, sell or
withdraw calls with these helpers - a retry could double-execute a trade.
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional
import aiohttp

from errors import ExchangeTransportError

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[tuple] = None,
    ):
        """
        Args:
            max_retries: Maximum number of retry attempts (0 = no retries)
            base_delay: Initial delay in seconds
            max_delay: Maximum delay cap in seconds
            exponential_base: Base for exponential backoff (2.0 = 1s, 2s, 4s, 8s...)
            jitter: Add random jitter to prevent thundering herd
            retryable_exceptions: Tuple of exception types to retry on
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
            OSError,
            ExchangeTransportError,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_attempts(
        cls,
        attempts: int,
        base_delay: float,
        exponential_base: float = 2.0,
        retryable_exceptions: Optional[tuple] = None,
    ) -> "RetryConfig":
        """Build a deterministic (no jitter) policy from a total attempt count."""
        return cls(
            max_retries=max(0, attempts - 1),
            base_delay=base_delay,
            max_delay=base_delay * (exponential_base ** max(0, attempts - 1)),
            exponential_base=exponential_base,
            jitter=False,
            retryable_exceptions=retryable_exceptions,
        )


# Default configs for different operation types
HTTP_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
)

# Read-only exchange queries (prices). Short enough to fit a price budget.
READ_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=1.0,
    max_delay=4.0,
)

# Position close persistence: 3 attempts, waiting 2s then 4s.
# Any store failure is worth another attempt - the sell already happened.
PERSISTENCE_RETRY_CONFIG = RetryConfig.from_attempts(
    attempts=3,
    base_delay=2.0,
    retryable_exceptions=(Exception,),
)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for retry attempt with exponential backoff and jitter."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add up to 25% jitter
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.1, delay) if config.jitter else delay


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    name: str = "operation",
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Any:
    """
    Run ``operation`` until it succeeds or the attempts are exhausted.

    The last exception is re-raised when every attempt fails.
    """
    if config is None:
        config = HTTP_RETRY_CONFIG
    if sleep is None:
        sleep = asyncio.sleep

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()

        except config.retryable_exceptions as e:
            if attempt < config.max_retries:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"[Retry] {name} failed (attempt {attempt + 1}/{config.max_attempts}): "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.1f}s..."
                )

                if on_retry:
                    on_retry(attempt, e)

                await sleep(delay)
            else:
                logger.error(
                    f"[Retry] {name} failed after {config.max_attempts} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise


def async_retry(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for async functions with automatic retry on failure.

    Args:
        config: RetryConfig instance (defaults to HTTP_RETRY_CONFIG)
        on_retry: Optional callback(attempt, exception) called before each retry

    Example:
        @async_retry(config=READ_RETRY_CONFIG)
        async def fetch_current_price(self, pair, credentials=None):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await retry_async(
                lambda: func(*args, **kwargs),
                config=config,
                name=func.__name__,
                on_retry=on_retry,
            )

        return wrapper
    return decorator


class ConnectionHealthMonitor:
    """
    Tracks last successful call and error counts per named exchange
    connection (e.g., "binance", "kraken").
    """

    def __init__(self, stale_threshold_sec: float = 60.0):
        """
        Args:
            stale_threshold_sec: Consider connection stale after this many seconds
                                 without successful operations
        """
        self.stale_threshold = stale_threshold_sec
        self._last_success: dict[str, float] = {}
        self._last_error: dict[str, str] = {}
        self._error_counts: dict[str, int] = {}

    def mark_success(self, name: str):
        """Mark successful operation for a connection."""
        self._last_success[name] = time.time()
        self._error_counts[name] = 0

    def mark_error(self, name: str, error: Optional[Exception] = None):
        """Mark failed operation for a connection."""
        self._error_counts[name] = self._error_counts.get(name, 0) + 1
        if error is not None:
            self._last_error[name] = f"{type(error).__name__}: {error}"

    def is_healthy(self, name: str) -> bool:
        """Check if a connection is healthy."""
        if name not in self._last_success:
            return False

        age = time.time() - self._last_success[name]
        return age < self.stale_threshold

    def get_status(self) -> dict:
        """Get status of all monitored connections."""
        now = time.time()
        status = {}

        for name in set(self._last_success) | set(self._error_counts):
            last = self._last_success.get(name)
            status[name] = {
                "last_success_age_sec": round(now - last, 1) if last else None,
                "is_healthy": self.is_healthy(name),
                "error_count": self._error_counts.get(name, 0),
                "last_error": self._last_error.get(name),
            }

        return status


# Global health monitor instance
connection_monitor = ConnectionHealthMonitor(stale_threshold_sec=600.0)
