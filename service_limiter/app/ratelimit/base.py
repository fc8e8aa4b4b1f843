"""
Common plumbing shared by the admission strategies.

A limiter owns a configuration, a key layout and an ``asyncio.Lock``; the
strategy subclasses only implement ``_evaluate``. Everything the store can
throw at us is converted here into a denied decision, so callers only ever
see allow/deny.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import ConfigurationError, CorruptStateError, StoreUnavailableError, ValidationError
from .keys import BucketKeys, KeyEncoding

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


REASON_STORE_UNAVAILABLE = "store_unavailable"
REASON_CORRUPT_STATE = "corrupt_state"
REASON_COST_EXCEEDS_CAPACITY = "cost_exceeds_capacity"
REASON_RESERVED_IDENTITY = "reserved_identity"

# Anything the client library raises for a failed or timed-out round trip
STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

Clock = Callable[[], datetime]


class RateLimitAlgorithm(str, Enum):
    """Selectable admission strategies."""

    TOKEN_BUCKET = "token_bucket"
    FIXED_WINDOW = "fixed_window"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BucketConfig:
    """Limiter configuration, fixed for the lifetime of a limiter."""

    capacity: int
    refill_rate: int
    refill_interval: timedelta
    key_prefix: str = "ratelimit:"
    key_encoding: KeyEncoding = KeyEncoding.BASE64
    atomic: bool = False
    max_transaction_attempts: int = 5

    def __post_init__(self):
        problems: Dict[str, Any] = {}
        for name in ("capacity", "refill_rate", "max_transaction_attempts"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                problems[name] = value
        if not isinstance(self.refill_interval, timedelta) or self.refill_interval <= timedelta(0):
            problems["refill_interval"] = self.refill_interval
        try:
            object.__setattr__(self, "key_encoding", KeyEncoding(self.key_encoding))
        except ValueError:
            problems["key_encoding"] = self.key_encoding

        if problems:
            raise ConfigurationError(
                "Rate limiter settings must be positive",
                details={name: repr(value) for name, value in problems.items()}
            )


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    limit: int
    remaining: int
    reason: Optional[str] = None


class BaseRateLimiter:
    """Base class for Redis-backed admission strategies."""

    algorithm: RateLimitAlgorithm

    def __init__(
        self,
        redis_client: redis.Redis,
        config: BucketConfig,
        *,
        logger=None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Optional[Clock] = None,
    ):
        self.redis = redis_client
        self.config = config
        self.keys = BucketKeys(config.key_prefix, config.key_encoding)
        self.logger = logger or get_logger(f"limiter.{self.algorithm.value}")
        self.metrics = metrics
        self._clock = clock or utcnow
        # Serialises the read-modify-write sequence within this process only
        self._lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self.config.capacity

    async def is_allowed(self, identity: str, cost: int = 1) -> bool:
        """Return True when ``identity`` may spend ``cost`` tokens now."""
        decision = await self.check(identity, cost)
        return decision.allowed

    async def check(self, identity: str, cost: int = 1) -> RateLimitDecision:
        """Run one admission check and report the decision with its budget.

        Store failures and unreadable state deny the request (fail closed);
        the cause is logged and never raised to the caller.
        """
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 1:
            raise ValidationError("Cost must be a positive integer", details={"cost": repr(cost)})

        start_time = time.perf_counter()
        try:
            async with self._lock:
                decision = await self._evaluate(identity, cost)
        except CorruptStateError as e:
            self.logger.error(
                "Corrupt bucket state, denying request",
                identity=identity,
                key=e.key,
                raw_value=repr(e.raw_value),
            )
            decision = self._deny(REASON_CORRUPT_STATE)
        except StoreUnavailableError as e:
            self.logger.error(
                "Rate limit store unavailable, denying request",
                identity=identity,
                error=e.message,
                details=e.details,
            )
            decision = self._deny(REASON_STORE_UNAVAILABLE)
        except STORE_ERRORS as e:
            self.logger.error(
                "Rate limit store error, denying request",
                identity=identity,
                error=str(e),
                error_type=type(e).__name__,
            )
            decision = self._deny(REASON_STORE_UNAVAILABLE)

        self._record(decision, time.perf_counter() - start_time)
        return decision

    async def _evaluate(self, identity: str, cost: int) -> RateLimitDecision:
        raise NotImplementedError

    def _allow(self, remaining: int) -> RateLimitDecision:
        return RateLimitDecision(allowed=True, limit=self.limit, remaining=max(0, remaining))

    def _deny(self, reason: Optional[str] = None) -> RateLimitDecision:
        return RateLimitDecision(allowed=False, limit=self.limit, remaining=0, reason=reason)

    def _parse_count(self, key: str, raw: Any) -> int:
        """Parse a stored integer counter."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise CorruptStateError(key, raw, "Stored token count is not an integer")

    def _record(self, decision: RateLimitDecision, duration: float):
        if self.metrics is None:
            return
        algorithm = self.algorithm.value
        self.metrics.increment_counter(
            "rate_limit_decisions_total",
            algorithm=algorithm,
            decision="allowed" if decision.allowed else "denied",
        )
        if decision.reason in (REASON_STORE_UNAVAILABLE, REASON_CORRUPT_STATE):
            self.metrics.increment_counter(
                "rate_limit_store_errors_total",
                algorithm=algorithm,
                reason=decision.reason,
            )
        self.metrics.observe_histogram("rate_limit_check_duration_seconds", duration, algorithm=algorithm)
