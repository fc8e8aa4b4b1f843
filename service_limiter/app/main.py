"""
Rate limiter service: a FastAPI app whose requests pass the admission middleware.
"""

from typing import Dict, Optional

import redis.asyncio as redis
from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from .config import RateLimiterSettings
from .ratelimit import RateLimitMiddleware, create_rate_limiter, create_redis_client
from .ratelimit.base import Clock


SERVICE_NAME = "limiter"
SERVICE_PORT = 8000


class LimiterService(BaseService):
    """Limiter service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        ratelimit_settings: Optional[RateLimiterSettings] = None,
        redis_client: Optional[redis.Redis] = None,
        clock: Optional[Clock] = None,
    ):
        config = config or get_config(SERVICE_NAME, SERVICE_PORT)
        self.ratelimit_settings = ratelimit_settings or RateLimiterSettings()
        self.redis = redis_client or create_redis_client(config)
        self._clock = clock
        super().__init__(SERVICE_NAME, SERVICE_PORT, config=config)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.redis.aclose()

        self._setup_limiter_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.limiter_service = self

    def _setup_middleware(self):
        """Install admission control beneath the common request middleware."""
        self.rate_limiter = create_rate_limiter(
            self.ratelimit_settings.to_bucket_config(),
            self.redis,
            self.ratelimit_settings.algorithm,
            metrics=self.metrics if self.config.metrics_enabled else None,
            clock=self._clock,
        )
        self.rate_limit_middleware = RateLimitMiddleware(
            self.rate_limiter,
            route_costs=self.ratelimit_settings.route_costs,
            exempt_paths=self.ratelimit_settings.exempt_paths,
        )
        self.app.middleware("http")(self.rate_limit_middleware)
        super()._setup_middleware()

    def _setup_limiter_routes(self):
        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Distributed rate limiter",
                "algorithm": self.rate_limiter.algorithm.value,
                "limit": self.rate_limiter.limit,
            }

        @self.app.get("/api/v1/ping")
        async def ping(request: Request):
            """Sample endpoint guarded by the admission middleware."""
            return {"pong": True, "client": self.rate_limit_middleware.get_client_id(request)}

    async def _check_dependencies(self) -> Dict[str, str]:
        try:
            await self.redis.ping()
            return {"redis": "ok"}
        except Exception as e:
            self.logger.warning("Redis health check failed", error=str(e))
            return {"redis": "error"}


def create_app():
    """Create FastAPI application."""
    service = LimiterService()
    return service.app


if __name__ == "__main__":
    service = LimiterService()
    service.run()
