"""
Retry utilities with exponential backoff for API calls.

A RetryPolicy describes how often and how long to retry; call_with_retry
applies it to any coroutine factory so connectors, token refreshes and jobs
share one retry loop.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

import httpx

from bizpulse.errors import TransientRemoteError, RateLimitedError
from bizpulse.utils.logger import log

T = TypeVar("T")


# Default retryable exceptions (network/API errors)
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientRemoteError,
    httpx.TimeoutException,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[BaseException] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How a transient failure is retried."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = DEFAULT_RETRYABLE_EXCEPTIONS

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
        )

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable_exceptions)

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Backoff for the given attempt, never shorter than a Retry-After hint"""
        delay = calculate_backoff(
            attempt,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.backoff_multiplier,
            jitter=self.jitter,
        )
        if isinstance(error, RateLimitedError) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay


async def call_with_retry(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
    *,
    description: str = "operation",
    stats: Optional[RetryStats] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Args:
        policy: Attempt count and backoff shape
        operation: Zero-argument coroutine factory, called once per attempt
        description: Label used in log lines
        stats: Optional stats object filled in as attempts happen
        on_retry: Callback called on each retry (attempt, error, delay)
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or immediately for
        non-retryable errors.
    """
    stats = stats if stats is not None else RetryStats()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation()
            stats.record_attempt()
            stats.success = True

            if attempt > 1:
                log.info(
                    f"{description} succeeded on attempt {attempt} "
                    f"after {stats.total_delay_seconds:.1f}s total delay"
                )
            return result

        except Exception as e:
            if attempt >= policy.max_attempts or not policy.is_retryable(e):
                stats.record_attempt(error=e)
                if policy.is_retryable(e):
                    log.error(f"{description} failed after {attempt} attempts: {e}")
                raise

            delay = policy.delay_for(attempt, e)
            stats.record_attempt(error=e, delay=delay)

            log.warning(
                f"{description} attempt {attempt} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )

            if on_retry:
                on_retry(attempt, e, delay)

            await sleep(delay)

    raise RuntimeError("Retry exhausted")
