"""
HTTP admission middleware.
"""

from typing import Dict, Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.logging import get_logger, set_client_context
from shared.errors import ConfigurationError
from .base import BaseRateLimiter, RateLimitDecision


HEADER_RATE_LIMIT = "X-RateLimit-Limit"
HEADER_RATE_LIMIT_REMAINING = "X-RateLimit-Remaining"

DEFAULT_EXEMPT_PATHS = ("/health", "/metrics")


def _normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"


class RateLimitMiddleware:
    """Rate limiting middleware for FastAPI.

    Register with ``app.middleware("http")(middleware)``. Denied requests get
    a 429 with ``{"error": "too many requests"}``; admitted requests carry the
    same rate limit headers on their response.
    """

    def __init__(
        self,
        rate_limiter: BaseRateLimiter,
        route_costs: Optional[Dict[str, int]] = None,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
    ):
        self.rate_limiter = rate_limiter
        self.logger = get_logger("limiter.rate_limit_middleware")
        self.route_costs = dict(route_costs or {})
        self.exempt_paths = frozenset(_normalize_path(path) for path in exempt_paths)

        invalid = {path: cost for path, cost in self.route_costs.items() if not isinstance(cost, int) or cost < 1}
        if invalid:
            raise ConfigurationError("Route costs must be positive integers", details={"route_costs": invalid})

    async def __call__(self, request: Request, call_next):
        if self.is_exempt(request.url.path):
            return await call_next(request)

        decision = await self.check_request(request)
        if not decision.allowed:
            response = JSONResponse(status_code=429, content={"error": "too many requests"})
            self._set_rate_limit_headers(response, decision)
            return response

        response = await call_next(request)
        self._set_rate_limit_headers(response, decision)
        return response

    async def check_request(self, request: Request) -> RateLimitDecision:
        """Check rate limit for request."""
        client_id = self.get_client_id(request)
        set_client_context(client_id)
        endpoint_path = request.url.path
        cost = self._cost_for_path(endpoint_path)

        try:
            decision = await self.rate_limiter.check(client_id, cost)
        except Exception as e:
            # The limiter already fails closed on store errors; this guards the pipeline itself
            self.logger.error("Rate limiter middleware error", client_id=client_id, path=endpoint_path, error=str(e))
            return RateLimitDecision(allowed=False, limit=self.rate_limiter.limit, remaining=0, reason="middleware_error")

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                path=endpoint_path,
                cost=cost,
                reason=decision.reason,
            )
        return decision

    def _set_rate_limit_headers(self, response, decision: RateLimitDecision) -> None:
        """Propagate rate limiting metadata via standard headers."""
        response.headers[HEADER_RATE_LIMIT] = str(decision.limit)
        response.headers[HEADER_RATE_LIMIT_REMAINING] = str(decision.remaining)

    def is_exempt(self, path: str) -> bool:
        """Exempt paths match exactly, ignoring trailing slashes."""
        return _normalize_path(path) in self.exempt_paths

    def get_client_id(self, request: Request) -> str:
        """Extract client ID from request.

        The first X-Forwarded-For hop wins, then X-Real-IP, then the socket peer.
        """
        forwarded_for = request.headers.get('X-Forwarded-For')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

        real_ip = request.headers.get('X-Real-IP')
        if real_ip:
            return real_ip.strip()

        return request.client.host if request.client else 'unknown'

    def _cost_for_path(self, path: str) -> int:
        """Longest configured prefix wins; unlisted paths cost one token."""
        best_prefix = None
        for prefix in self.route_costs:
            if path.startswith(prefix) and (best_prefix is None or len(prefix) > len(best_prefix)):
                best_prefix = prefix
        return self.route_costs[best_prefix] if best_prefix is not None else 1
