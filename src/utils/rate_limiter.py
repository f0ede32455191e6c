"""Token-bucket rate limiting.

JudgeRateLimiter awaits a token before each judge call, keyed by model.
In-memory and injected explicitly (no module-level registries).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class _TokenBucket:
    """Token bucket for one key."""

    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    def consume(self) -> bool:
        """Try to consume one token. Returns True if allowed."""
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    @property
    def retry_after(self) -> float:
        """Seconds until the next token is available."""
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.refill_rate


class JudgeRateLimiter:
    """Per-key (model) token bucket that waits instead of rejecting.

    Args:
        requests_per_minute: Sustained rate and burst capacity per key.
    """

    def __init__(self, requests_per_minute: int = 120) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self._rpm = requests_per_minute
        self._buckets: dict[str, _TokenBucket] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, key: str) -> _TokenBucket:
        if key not in self._buckets:
            self._buckets[key] = _TokenBucket(
                capacity=float(self._rpm),
                refill_rate=self._rpm / 60.0,
            )
        return self._buckets[key]

    async def acquire(self, key: str) -> None:
        """Block until a token for ``key`` is available."""
        while True:
            async with self._lock:
                bucket = self._bucket(key)
                if bucket.consume():
                    return
                wait = bucket.retry_after
            logger.debug("judge_rate_limited", key=key, wait_seconds=round(wait, 3))
            await asyncio.sleep(wait)

