"""
Fixed window counter backed by Redis.

A single key per identity holds what is left of the current window and
expires when the window ends, at which point the next request opens a new
window at full capacity.
"""

from datetime import timedelta

from .base import BaseRateLimiter, RateLimitAlgorithm, RateLimitDecision, REASON_COST_EXCEEDS_CAPACITY


class FixedWindowRateLimiter(BaseRateLimiter):
    """Decrement-only window counter; ``refill_rate`` is not used."""

    algorithm = RateLimitAlgorithm.FIXED_WINDOW

    @property
    def window_ms(self) -> int:
        return max(1, self.config.refill_interval // timedelta(milliseconds=1))

    async def _evaluate(self, identity: str, cost: int) -> RateLimitDecision:
        key = self.keys.tokens(identity)
        capacity = self.config.capacity

        if cost > capacity:
            return self._deny(REASON_COST_EXCEEDS_CAPACITY)

        raw = await self.redis.get(key)
        if raw is None:
            return await self._open_window(key, cost)

        remaining = self._parse_count(key, raw)
        if remaining < cost:
            return self._deny()

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.decrby(key, cost)
            pipe.pttl(key)
            remaining, ttl = await pipe.execute()

        if ttl < 0:
            # The window expired between GET and DECRBY, which recreated the key without expiry
            return await self._open_window(key, cost)

        return self._allow(remaining)

    async def _open_window(self, key: str, cost: int) -> RateLimitDecision:
        remaining = self.config.capacity - cost
        await self.redis.set(key, remaining, px=self.window_ms)
        return self._allow(remaining)
