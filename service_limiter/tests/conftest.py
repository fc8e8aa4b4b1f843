"""
Shared fixtures for limiter tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from redis.exceptions import WatchError

from service_limiter.app.ratelimit import BucketConfig, FixedWindowRateLimiter, KeyEncoding, TokenBucketRateLimiter


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` covering the commands the limiters use.

    Values are returned as bytes like a client without ``decode_responses``.
    Expiry runs on a virtual millisecond clock moved with :meth:`advance`.
    Every command yields to the event loop once so concurrent checks interleave.
    """

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.expiry: Dict[str, int] = {}
        self.versions: Dict[str, int] = {}
        self.now_ms = 0
        self.fail_with: Optional[Exception] = None
        # Callables run right before a pipeline executes, one per execute
        self.before_execute: List[Callable[["FakeRedis"], None]] = []

    def advance(self, ms: int):
        self.now_ms += ms

    def _raise_if_failing(self):
        if self.fail_with is not None:
            raise self.fail_with

    def _purge(self, key: str):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.now_ms:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
            self._bump(key)

    def _bump(self, key: str):
        self.versions[key] = self.versions.get(key, 0) + 1

    def _get(self, key: str) -> Optional[bytes]:
        self._purge(key)
        return self.data.get(key)

    def _set(self, key: str, value: Any, px: Optional[int] = None) -> bool:
        self.data[key] = str(value).encode("utf-8")
        self.expiry.pop(key, None)
        if px is not None:
            self.expiry[key] = self.now_ms + px
        self._bump(key)
        return True

    def _decrby(self, key: str, amount: int) -> int:
        current = int(self._get(key) or 0) - amount
        self.data[key] = str(current).encode("utf-8")
        self._bump(key)
        return current

    def _pttl(self, key: str) -> int:
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expiry:
            return -1
        return self.expiry[key] - self.now_ms

    async def get(self, key: str):
        await asyncio.sleep(0)
        self._raise_if_failing()
        return self._get(key)

    async def mget(self, *keys: str):
        await asyncio.sleep(0)
        self._raise_if_failing()
        return [self._get(key) for key in keys]

    async def set(self, key: str, value: Any, px: Optional[int] = None):
        await asyncio.sleep(0)
        self._raise_if_failing()
        return self._set(key, value, px=px)

    async def ping(self):
        self._raise_if_failing()
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    """Buffered MULTI/EXEC pipeline with WATCH support."""

    def __init__(self, store: FakeRedis):
        self.store = store
        self.commands: List[tuple] = []
        self.watched: Dict[str, int] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.reset()

    async def reset(self):
        self.commands = []
        self.watched = {}

    async def watch(self, *keys: str):
        await asyncio.sleep(0)
        self.store._raise_if_failing()
        self.watched = {key: self.store.versions.get(key, 0) for key in keys}

    async def mget(self, *keys: str):
        return await self.store.mget(*keys)

    def multi(self):
        self.commands = []

    def set(self, key: str, value: Any, px: Optional[int] = None):
        self.commands.append(("_set", (key, value), {"px": px}))
        return self

    def decrby(self, key: str, amount: int):
        self.commands.append(("_decrby", (key, amount), {}))
        return self

    def pttl(self, key: str):
        self.commands.append(("_pttl", (key,), {}))
        return self

    async def execute(self):
        await asyncio.sleep(0)
        try:
            self.store._raise_if_failing()
            if self.store.before_execute:
                self.store.before_execute.pop(0)(self.store)
            for key, version in self.watched.items():
                if self.store.versions.get(key, 0) != version:
                    raise WatchError("Watched variable changed.")
            return [getattr(self.store, name)(*args, **kwargs) for name, args, kwargs in self.commands]
        finally:
            await self.reset()


class FakeClock:
    """Controllable UTC clock for refill arithmetic."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_token_bucket(fake_redis, clock):
    """Build a token bucket limiter over the fake store."""

    def _make(capacity=5, refill_rate=1, refill_interval=timedelta(seconds=1), **kwargs):
        limiter_kwargs = {k: kwargs.pop(k) for k in ("logger", "metrics") if k in kwargs}
        config = BucketConfig(
            capacity=capacity,
            refill_rate=refill_rate,
            refill_interval=refill_interval,
            key_prefix=kwargs.pop("key_prefix", "test:"),
            key_encoding=kwargs.pop("key_encoding", KeyEncoding.PLAIN),
            **kwargs
        )
        return TokenBucketRateLimiter(fake_redis, config, clock=clock, **limiter_kwargs)

    return _make


@pytest.fixture
def make_fixed_window(fake_redis):
    """Build a fixed window limiter over the fake store."""

    def _make(capacity=5, window=timedelta(seconds=60), **kwargs):
        limiter_kwargs = {k: kwargs.pop(k) for k in ("logger", "metrics") if k in kwargs}
        config = BucketConfig(
            capacity=capacity,
            refill_rate=1,
            refill_interval=window,
            key_prefix=kwargs.pop("key_prefix", "test:"),
            key_encoding=kwargs.pop("key_encoding", KeyEncoding.PLAIN),
            **kwargs
        )
        return FixedWindowRateLimiter(fake_redis, config, **limiter_kwargs)

    return _make
