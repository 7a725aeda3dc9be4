"""Retry with exponential backoff and jitter.

The driver wraps one fallible async operation. It does not deduplicate side
effects: if the operation does something externally visible (a tool call, a
POST that is not idempotent), making that safe to repeat is the caller's job.
The session only retries the opening of a stream, before any chunk has been
consumed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

from open_agent.cancellation import CancellationToken
from open_agent.errors import OpenAgentError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Default classification: transport failures, timeouts, 429 and 5xx.

    Authentication, validation and decode errors are terminal.
    """
    if isinstance(error, OpenAgentError):
        return bool(error.retryable)
    return False


class RetryPolicy(BaseModel):
    """Backoff settings.

    The delay before attempt ``n`` (1-indexed, n > 1) is
    ``min(initial_delay * backoff_multiplier ** (n - 2), max_delay)`` plus a
    uniform jitter in ``[0, jitter]`` seconds.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    initial_delay: float = Field(1.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_delay: float = Field(60.0, ge=0.0)
    jitter: float = Field(0.1, ge=0.0)
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to sleep before ``attempt``. Attempt 1 never waits."""
        if attempt <= 1:
            return 0.0
        base = self.initial_delay * self.backoff_multiplier ** (attempt - 2)
        base = min(base, self.max_delay)
        if self.jitter:
            base += (rng or random).uniform(0.0, self.jitter)
        return base


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    token: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Raises the most recent error once ``max_attempts`` are used, or the first
    error the policy's predicate rejects. With a token, the backoff sleep is
    a cancellation point (ExchangeInterrupted).
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.warning("Giving up after %d attempts: %s", attempt, e)
                raise
            attempt += 1
            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt - 1,
                policy.max_attempts,
                e,
                delay,
            )
            if token is not None:
                await token.run(sleep(delay))
            else:
                await sleep(delay)
