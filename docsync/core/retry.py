"""Exponential backoff for remote calls."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..errors import DocSyncError, RemoteServiceError, TransportError
from ..models.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries an async call on transient remote failures."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self.config = config or RetryConfig()

    def is_retryable(self, error: BaseException) -> bool:
        """Check whether an error belongs to the configured transient set."""
        if isinstance(error, RemoteServiceError):
            return error.status_code in self.config.retryable_statuses
        if isinstance(error, TransportError):
            return error.kind in self.config.retryable_errors
        return False

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before the retry following ``attempt`` (1-based).

        A Retry-After hint on a 429 response overrides the computed backoff,
        still capped at ``max_delay``.
        """
        cfg = self.config
        if isinstance(error, RemoteServiceError) and error.status_code == 429 and error.retry_after is not None:
            return min(error.retry_after, cfg.max_delay)

        delay = min(cfg.initial_delay * (cfg.multiplier ** (attempt - 1)), cfg.max_delay)
        if cfg.jitter and delay > 0:
            delay += delay * cfg.jitter * random.random()
        return min(delay, cfg.max_delay)

    async def run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` with retries.

        Args:
            operation: Name used in log messages
            func: Zero-argument coroutine factory, invoked once per attempt

        Returns:
            Result of the first successful attempt

        Raises:
            DocSyncError: The last error once the retry budget is exhausted, or
                the first non-retryable error, with ``attempts`` set
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except DocSyncError as err:
                err.attempts = attempt
                if not self.is_retryable(err):
                    raise
                if attempt > self.config.max_retries:
                    logger.warning("%s failed after %d attempts: %s", operation, attempt, err.message)
                    raise
                delay = self.compute_delay(attempt, err)
                logger.debug(
                    "%s attempt %d failed (%s), retrying in %.2fs",
                    operation, attempt, err.message, delay,
                )
                await asyncio.sleep(delay)
