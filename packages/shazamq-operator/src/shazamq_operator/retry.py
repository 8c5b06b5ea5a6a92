"""
Retry configuration and call-site retry with exponential backoff.

This module provides:
- RetryConfig: exponential backoff with jitter, shared by call-site retries
  and by the scheduler's failure requeue
- call_with_retry: bounded retries of one outbound call, each attempt bounded
  by a timeout

Outbound calls are retried where they are made, never by stalling the whole
reconcile pass. When the attempts run out the last TransientAPIError
propagates and the scheduler requeues the pass with backoff.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from shazamq_protocols.errors import TransientAPIError

if TYPE_CHECKING:
    from shazamq_operator.config import OperatorSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (default 3)
        min_wait_seconds: Wait before the first retry (default 1.0)
        max_wait_seconds: Cap on the wait between retries (default 60.0)
        exponential_base: Base for exponential calculation (default 2.0)
        jitter_fraction: Fraction of wait time to add as jitter (default 0.5)

    Example:
        config = RetryConfig(max_attempts=5, min_wait_seconds=2.0)
        delay = config.delay_for(attempt=1)
        # ~4-6 seconds (2s * 2^1 base + jitter)
    """

    max_attempts: int = 3
    min_wait_seconds: float = 1.0
    max_wait_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter_fraction: float = 0.5

    @classmethod
    def from_settings(cls, settings: "OperatorSettings") -> "RetryConfig":
        """Call-site retry policy from operator settings."""
        return cls(
            max_attempts=settings.api_retry_attempts,
            min_wait_seconds=settings.backoff_base_seconds,
            max_wait_seconds=settings.backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Calculate the delay before the next attempt.

        Formula: min(max_wait, min_wait * base^attempt) + random(0, wait * jitter)
        The jitter never pushes the delay past max_wait.

        Args:
            attempt: 0 for the first retry, 1 for the second, etc.

        Returns:
            Delay in seconds
        """
        wait = min(
            self.max_wait_seconds,
            self.min_wait_seconds * (self.exponential_base**attempt),
        )
        jitter = random.uniform(0, wait * self.jitter_fraction)
        return min(self.max_wait_seconds, wait + jitter)

    def should_retry(self, attempt_count: int) -> bool:
        """True if attempt_count < max_attempts."""
        return attempt_count < self.max_attempts


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig,
    timeout: float,
    description: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an outbound call with a per-attempt timeout and bounded retries.

    Only TransientAPIError (and timeouts, which are converted to it) are
    retried. Every other exception propagates immediately.

    Args:
        call: Zero-argument coroutine factory; invoked once per attempt
        config: Backoff configuration
        timeout: Seconds allowed per attempt
        description: Label used in log messages
        sleep: Sleep function (injected by tests)

    Returns:
        The call's result

    Raises:
        TransientAPIError: When every attempt failed transiently
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            error = TransientAPIError(f"{description} timed out after {timeout}s")
        except TransientAPIError as e:
            error = e

        attempt += 1
        if not config.should_retry(attempt):
            raise error

        delay = config.delay_for(attempt - 1)
        logger.debug(
            "%s failed (%s), retry %d/%d in %.2fs",
            description,
            error,
            attempt,
            config.max_attempts - 1,
            delay,
        )
        await sleep(delay)
