"""
Rate limiting package for the limiter service.

Holds the Redis-backed admission strategies (token bucket and fixed window),
the key layout they share and the HTTP middleware that enforces per-identity
request budgets.
"""

from .base import BaseRateLimiter, BucketConfig, RateLimitAlgorithm, RateLimitDecision
from .factory import create_rate_limiter, create_redis_client
from .fixed_window import FixedWindowRateLimiter
from .keys import BucketKeys, KeyEncoding, decode_identity, encode_identity
from .middleware import RateLimitMiddleware
from .token_bucket import TokenBucketRateLimiter

__all__ = [
    "BaseRateLimiter",
    "BucketConfig",
    "BucketKeys",
    "FixedWindowRateLimiter",
    "KeyEncoding",
    "RateLimitAlgorithm",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "TokenBucketRateLimiter",
    "create_rate_limiter",
    "create_redis_client",
    "decode_identity",
    "encode_identity",
]
