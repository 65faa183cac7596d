"""Retry policy for remote blob operations."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from common.constants import UNLIMITED_RETRIES
from common.exceptions import RetriableTransportError, RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a retriable failure is retried.

    Attributes:
        max_attempts: Total attempts allowed, or -1 for unlimited
        backoff_seconds: Delay before the first retry; doubles per attempt
        max_backoff_seconds: Upper bound on a single delay
    """
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0

    def __post_init__(self):
        if self.max_attempts != UNLIMITED_RETRIES and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 or {UNLIMITED_RETRIES}, got {self.max_attempts}")

    def allows(self, attempts: int) -> bool:
        """True if another attempt may follow `attempts` failed ones."""
        return self.max_attempts == UNLIMITED_RETRIES or attempts < self.max_attempts

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before retry number `attempt` (1-based).

        A server-provided retry_after hint takes precedence.
        """
        if retry_after is not None:
            return max(0.0, retry_after)
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))


async def run_with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str
) -> T:
    """
    Run an async operation, retrying transient transport failures.

    Args:
        operation: Zero-argument coroutine function performing one attempt
        policy: Attempt budget and backoff
        description: Human-readable action for log messages (e.g. "download chunk X")

    Returns:
        Result of the first successful attempt

    Raises:
        RetriesExhaustedError: If every allowed attempt failed with a retriable error
        Any non-retriable exception raised by the operation, immediately
    """
    attempts = 0
    while True:
        try:
            return await operation()
        except RetriableTransportError as e:
            attempts += 1
            if not policy.allows(attempts):
                logger.error(f"Couldn't {description} after {attempts} attempts: {e}")
                raise RetriesExhaustedError(
                    f"Couldn't {description} after {attempts} attempts"
                ) from e
            delay = policy.delay_for(attempts, e.retry_after)
            logger.warning(f"({attempts}) Failed to {description}, retrying in {delay:.1f}s: {e}")
            await asyncio.sleep(delay)
