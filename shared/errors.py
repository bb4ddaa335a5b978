"""
Shared error handling for the cache pipeline layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class CacheLayerException(Exception):
    """Base exception for cache layer failures.

    Anything raised as (a subclass of) this type is an optimisation-layer
    failure: interceptors log and count it, then fall back to the real
    handler. It is never surfaced to the caller of the pipeline.
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class CacheUnavailableError(CacheLayerException):
    """The backing key-value store could not be reached or rejected the call."""

    def __init__(self, message: str = "Cache store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class SerializationError(CacheLayerException):
    """A value could not be serialized, compressed, or decoded."""

    def __init__(self, message: str = "Cache serialization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)


class LockUnavailableError(CacheLayerException):
    """The distributed lock provider failed."""

    def __init__(self, message: str = "Distributed lock unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("LOCK_UNAVAILABLE", message, details)


class ConfigurationError(CacheLayerException):
    """The cache layer was wired with an invalid combination of settings."""

    def __init__(self, message: str = "Invalid cache configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)
