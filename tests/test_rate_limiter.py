"""Tests for the judge token-bucket rate limiter."""

from __future__ import annotations

import asyncio
import time

import pytest

from src.utils.rate_limiter import JudgeRateLimiter, _TokenBucket


class TestTokenBucket:
    def test_starts_full(self):
        bucket = _TokenBucket(capacity=2, refill_rate=1.0)
        assert bucket.consume() is True
        assert bucket.consume() is True
        assert bucket.consume() is False

    def test_retry_after(self):
        bucket = _TokenBucket(capacity=1, refill_rate=2.0)
        bucket.consume()
        assert 0 < bucket.retry_after <= 0.5


class TestJudgeRateLimiter:
    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            JudgeRateLimiter(0)

    @pytest.mark.asyncio
    async def test_burst_within_capacity_does_not_wait(self):
        limiter = JudgeRateLimiter(requests_per_minute=60)
        started = time.monotonic()
        for _ in range(5):
            await limiter.acquire("anthropic/claude-3-haiku")
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = JudgeRateLimiter(requests_per_minute=1)
        await limiter.acquire("model-a")
        await asyncio.wait_for(limiter.acquire("model-b"), timeout=0.5)

    @pytest.mark.asyncio
    async def test_exhausted_key_waits(self):
        limiter = JudgeRateLimiter(requests_per_minute=1)
        await limiter.acquire("model-a")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(limiter.acquire("model-a"), timeout=0.2)
