"""
Construction helpers for limiters and their Redis client.
"""

from typing import Dict, Optional, Type, TYPE_CHECKING

import redis.asyncio as redis

from shared.config import BaseConfig
from shared.errors import ConfigurationError
from .base import BaseRateLimiter, BucketConfig, Clock, RateLimitAlgorithm
from .fixed_window import FixedWindowRateLimiter
from .token_bucket import TokenBucketRateLimiter

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


LIMITERS: Dict[RateLimitAlgorithm, Type[BaseRateLimiter]] = {
    RateLimitAlgorithm.TOKEN_BUCKET: TokenBucketRateLimiter,
    RateLimitAlgorithm.FIXED_WINDOW: FixedWindowRateLimiter,
}


def create_redis_client(config: BaseConfig) -> redis.Redis:
    """Create the shared store client with finite socket timeouts."""
    return redis.from_url(
        config.redis_url,
        socket_timeout=config.redis_socket_timeout,
        socket_connect_timeout=config.redis_connect_timeout,
    )


def create_rate_limiter(
    config: BucketConfig,
    redis_client: redis.Redis,
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.TOKEN_BUCKET,
    *,
    logger=None,
    metrics: Optional["MetricsCollector"] = None,
    clock: Optional[Clock] = None,
) -> BaseRateLimiter:
    """Instantiate the admission strategy selected by ``algorithm``."""
    try:
        limiter_cls = LIMITERS[RateLimitAlgorithm(algorithm)]
    except (KeyError, ValueError):
        raise ConfigurationError("Unknown rate limit algorithm", details={"algorithm": repr(algorithm)})

    return limiter_cls(redis_client, config, logger=logger, metrics=metrics, clock=clock)
