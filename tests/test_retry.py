"""Tests for the retry driver."""

import asyncio
import random

import pytest

from open_agent.cancellation import CancellationToken
from open_agent.errors import (
    ApiError,
    ExchangeInterrupted,
    InvalidInputError,
    ProtocolDecodeError,
    RequestTimeout,
    TransportError,
)
from open_agent.retry import RetryPolicy, is_retryable_error, retry_with_backoff


class _Sleeps:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestClassification:
    def test_transport_and_timeout_retryable(self):
        assert is_retryable_error(TransportError("refused"))
        assert is_retryable_error(RequestTimeout("slow"))

    def test_unrecoverable_transport_not_retryable(self):
        assert not is_retryable_error(TransportError("bad url", recoverable=False))

    def test_server_errors_retryable(self):
        assert is_retryable_error(ApiError("overloaded", status_code=503))
        assert is_retryable_error(ApiError("rate", status_code=429))

    def test_client_errors_not_retryable(self):
        assert not is_retryable_error(ApiError("auth", status_code=401))
        assert not is_retryable_error(ApiError("bad", status_code=400))
        assert not is_retryable_error(ApiError("in-stream"))

    def test_other_errors_not_retryable(self):
        assert not is_retryable_error(ProtocolDecodeError("bad json"))
        assert not is_retryable_error(InvalidInputError("bad"))
        assert not is_retryable_error(ValueError("x"))


class TestDelay:
    def test_first_attempt_never_waits(self):
        assert RetryPolicy().delay_for(1) == 0.0

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=10.0, max_delay=5.0, jitter=0.0)
        assert policy.delay_for(4) == 5.0

    def test_jitter_bounded(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.5)
        rng = random.Random(7)
        for _ in range(50):
            assert 1.0 <= policy.delay_for(2, rng) <= 1.5

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleeps = _Sleeps()

        async def op():
            return "ok"

        assert await retry_with_backoff(op, RetryPolicy(), sleep=sleeps) == "ok"
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_perpetual_failure_invoked_exactly_max_attempts(self):
        """With everything retryable and 3 attempts, the 3rd error comes back."""
        calls = []

        async def op():
            calls.append(1)
            raise RuntimeError(f"failure {len(calls)}")

        policy = RetryPolicy(max_attempts=3, jitter=0.0, is_retryable=lambda e: True)
        sleeps = _Sleeps()
        with pytest.raises(RuntimeError, match="failure 3"):
            await retry_with_backoff(op, policy, sleep=sleeps)
        assert len(calls) == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        calls = []

        async def op():
            calls.append(1)
            raise ApiError("unauthorized", status_code=401)

        with pytest.raises(ApiError):
            await retry_with_backoff(op, RetryPolicy(max_attempts=5), sleep=_Sleeps())
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient(self):
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise TransportError("reset")
            return "done"

        result = await retry_with_backoff(op, RetryPolicy(max_attempts=3), sleep=_Sleeps())
        assert result == "done"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_sleep_is_cancellation_point(self):
        token = CancellationToken()

        async def op():
            raise TransportError("down")

        async def slow_sleep(delay):
            token.cancel()
            await asyncio.sleep(10)

        with pytest.raises(ExchangeInterrupted):
            await asyncio.wait_for(
                retry_with_backoff(op, RetryPolicy(max_attempts=3), token=token, sleep=slow_sleep),
                timeout=1.0,
            )
