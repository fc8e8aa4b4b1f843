"""
Token bucket rate limiter backed by Redis.

Each identity owns two keys: the token count and the RFC-3339 timestamp of
the last refill. Refill is computed lazily on every check from the wall-clock
time elapsed since that timestamp, so limiter instances never need a shared
ticking process; Redis is the only shared memory.

With ``atomic=False`` the read and the write are separate round trips. The
per-instance lock keeps one process from double-spending, but two replicas
checking the same identity at the same moment may both admit. ``atomic=True``
WATCHes both keys and retries the computation if another writer got there
first.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import WatchError

from shared.errors import CorruptStateError, StoreUnavailableError
from .base import (
    BaseRateLimiter,
    RateLimitAlgorithm,
    RateLimitDecision,
    REASON_COST_EXCEEDS_CAPACITY,
    REASON_RESERVED_IDENTITY,
)


def format_timestamp(value: datetime) -> str:
    """Render a refill timestamp in the stored RFC-3339 form."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(raw: str) -> datetime:
    """Parse a stored refill timestamp; offsets are mandatory."""
    parsed = datetime.fromisoformat(raw.strip())
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without UTC offset: {raw!r}")
    return parsed


@dataclass(frozen=True)
class _RefilledBucket:
    tokens: int
    refilled_at: datetime
    decision: RateLimitDecision


class TokenBucketRateLimiter(BaseRateLimiter):
    """Distributed token bucket rate limiter using Redis."""

    algorithm = RateLimitAlgorithm.TOKEN_BUCKET

    async def _evaluate(self, identity: str, cost: int) -> RateLimitDecision:
        if self.keys.is_reserved(identity):
            self.logger.warning("Identity collides with the refill timestamp namespace, denying request", identity=identity)
            return self._deny(REASON_RESERVED_IDENTITY)

        token_key = self.keys.tokens(identity)
        refill_key = self.keys.last_refill(identity)

        if self.config.atomic:
            return await self._evaluate_in_transaction(token_key, refill_key, cost)

        raw_tokens, raw_refill = await self.redis.mget(token_key, refill_key)
        bucket = self._refill(token_key, refill_key, raw_tokens, raw_refill, cost)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(token_key, bucket.tokens)
            pipe.set(refill_key, format_timestamp(bucket.refilled_at))
            await pipe.execute()

        return bucket.decision

    async def _evaluate_in_transaction(self, token_key: str, refill_key: str, cost: int) -> RateLimitDecision:
        attempts = self.config.max_transaction_attempts
        async with self.redis.pipeline(transaction=True) as pipe:
            for attempt in range(1, attempts + 1):
                try:
                    await pipe.watch(token_key, refill_key)
                    raw_tokens, raw_refill = await pipe.mget(token_key, refill_key)
                    bucket = self._refill(token_key, refill_key, raw_tokens, raw_refill, cost)

                    pipe.multi()
                    pipe.set(token_key, bucket.tokens)
                    pipe.set(refill_key, format_timestamp(bucket.refilled_at))
                    await pipe.execute()
                    return bucket.decision
                except WatchError:
                    self.logger.debug("Bucket changed during transaction, retrying", key=token_key, attempt=attempt)

        raise StoreUnavailableError(
            "Bucket contended beyond transaction attempts",
            details={"key": token_key, "attempts": attempts}
        )

    def _refill(
        self,
        token_key: str,
        refill_key: str,
        raw_tokens: Any,
        raw_refill: Any,
        cost: int,
    ) -> _RefilledBucket:
        """Apply elapsed-time refill to the stored state and decide on ``cost``."""
        now = self._clock()
        capacity = self.config.capacity

        if raw_tokens is None:
            tokens = capacity
        else:
            tokens = self._parse_count(token_key, raw_tokens)
            if tokens < 0:
                raise CorruptStateError(token_key, raw_tokens, "Stored token count is negative")
            # Capacity may have been lowered since the value was written
            tokens = min(tokens, capacity)

        last_refill = now if raw_refill is None else self._parse_refill_time(refill_key, raw_refill)

        refilled_at = last_refill
        if now > last_refill:
            intervals = (now - last_refill) // self.config.refill_interval
            if intervals:
                tokens = min(capacity, tokens + intervals * self.config.refill_rate)
                # Only whole intervals are consumed; the remainder carries over
                refilled_at = last_refill + intervals * self.config.refill_interval
            if tokens == capacity:
                refilled_at = now

        if cost > capacity:
            decision = self._deny(REASON_COST_EXCEEDS_CAPACITY)
        elif tokens >= cost:
            tokens -= cost
            decision = self._allow(tokens)
        else:
            decision = self._deny()

        return _RefilledBucket(tokens=tokens, refilled_at=refilled_at, decision=decision)

    def _parse_refill_time(self, key: str, raw: Any) -> datetime:
        value: Optional[str] = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            return parse_timestamp(value)
        except (TypeError, ValueError, AttributeError):
            raise CorruptStateError(key, raw, "Stored refill timestamp is not RFC-3339")
