"""
Unit tests for the fixed window rate limiter.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


class TestFixedWindowRateLimiter:
    """Test cases for FixedWindowRateLimiter."""

    @pytest.mark.asyncio
    async def test_window_admits_capacity_then_denies(self, make_fixed_window, fake_redis):
        limiter = make_fixed_window(capacity=5)

        decisions = [await limiter.check("user1") for _ in range(6)]

        assert [d.allowed for d in decisions] == [True, True, True, True, True, False]
        assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0, 0]
        assert fake_redis._pttl("test:user1") == 60_000

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, make_fixed_window, fake_redis):
        limiter = make_fixed_window(capacity=2, window=timedelta(seconds=10))
        for _ in range(2):
            await limiter.check("user1")
        assert await limiter.is_allowed("user1") is False

        fake_redis.advance(10_000)
        decision = await limiter.check("user1")

        assert decision.allowed is True
        assert decision.remaining == 1

    @pytest.mark.asyncio
    async def test_cost_consumes_window_budget(self, make_fixed_window):
        limiter = make_fixed_window(capacity=5)

        assert (await limiter.check("user1", cost=3)).remaining == 2
        assert (await limiter.check("user1", cost=3)).allowed is False
        assert (await limiter.check("user1", cost=2)).remaining == 0

    @pytest.mark.asyncio
    async def test_cost_above_capacity_denied_without_store_access(self, make_fixed_window, fake_redis):
        limiter = make_fixed_window(capacity=5)

        decision = await limiter.check("user1", cost=6)

        assert decision.allowed is False
        assert decision.reason == "cost_exceeds_capacity"
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_counter_without_expiry_opens_new_window(self, make_fixed_window, fake_redis):
        # A key left without TTL, as DECRBY on an expired key would leave it
        fake_redis._set("test:user1", 3)
        limiter = make_fixed_window(capacity=5)

        decision = await limiter.check("user1")

        assert decision.remaining == 4
        assert fake_redis.data["test:user1"] == b"4"
        assert fake_redis._pttl("test:user1") == 60_000

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, make_fixed_window):
        limiter = make_fixed_window(capacity=1)

        assert await limiter.is_allowed("user1") is True
        assert await limiter.is_allowed("user2") is True
        assert await limiter.is_allowed("user1") is False

    @pytest.mark.asyncio
    async def test_store_error_fails_closed(self, make_fixed_window, fake_redis):
        logger = MagicMock()
        limiter = make_fixed_window(logger=logger)
        fake_redis.fail_with = RedisConnectionError("Connection refused")

        decision = await limiter.check("user1")

        assert decision.allowed is False
        assert decision.reason == "store_unavailable"
        logger.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_corrupt_counter_fails_closed(self, make_fixed_window, fake_redis):
        fake_redis._set("test:user1", "lots", px=1000)
        limiter = make_fixed_window()

        decision = await limiter.check("user1")

        assert decision.allowed is False
        assert decision.reason == "corrupt_state"

    def test_window_length_in_milliseconds(self, make_fixed_window):
        assert make_fixed_window(window=timedelta(minutes=1)).window_ms == 60_000
        assert make_fixed_window(window=timedelta(microseconds=10)).window_ms == 1
