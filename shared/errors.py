"""
Shared error handling for the rate limiter services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RateLimiterException(Exception):
    """Base exception for rate limiter components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(RateLimiterException):
    """Invalid limiter or service configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ValidationError(RateLimiterException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StoreUnavailableError(RateLimiterException):
    """The shared key-value store could not be reached or answered with an error."""

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class CorruptStateError(RateLimiterException):
    """Persisted bucket state could not be parsed."""

    def __init__(self, key: str, raw_value: Any, message: str = "Corrupt bucket state"):
        super().__init__("CORRUPT_STATE", message, {"key": key, "raw_value": repr(raw_value)})
        self.key = key
        self.raw_value = raw_value
