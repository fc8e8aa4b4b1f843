"""
Rate limiter settings loaded from the environment.
"""

from datetime import timedelta
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ratelimit.base import BucketConfig, RateLimitAlgorithm
from .ratelimit.keys import KeyEncoding


class RateLimiterSettings(BaseSettings):
    """Admission policy for the limiter service (``RATELIMIT_*`` variables)."""

    model_config = SettingsConfigDict(
        env_prefix="RATELIMIT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    algorithm: RateLimitAlgorithm = Field(default=RateLimitAlgorithm.TOKEN_BUCKET)
    capacity: int = Field(default=100)
    refill_rate: int = Field(default=10)
    refill_interval_ms: int = Field(default=1000)
    key_prefix: str = Field(default="ratelimit:")
    key_encoding: KeyEncoding = Field(default=KeyEncoding.BASE64)
    atomic: bool = Field(default=False)
    max_transaction_attempts: int = Field(default=5)

    # JSON in the environment, e.g. RATELIMIT_ROUTE_COSTS='{"/api/v1/bulk": 10}'
    route_costs: Dict[str, int] = Field(default_factory=dict)
    exempt_paths: List[str] = Field(default_factory=lambda: ["/health", "/metrics"])

    def to_bucket_config(self) -> BucketConfig:
        """Build the limiter configuration; raises ConfigurationError on bad values."""
        return BucketConfig(
            capacity=self.capacity,
            refill_rate=self.refill_rate,
            refill_interval=timedelta(milliseconds=self.refill_interval_ms),
            key_prefix=self.key_prefix,
            key_encoding=self.key_encoding,
            atomic=self.atomic,
            max_transaction_attempts=self.max_transaction_attempts,
        )
