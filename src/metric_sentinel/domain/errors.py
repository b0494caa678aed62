"""
Domain Error Taxonomy.

Only InvalidKeyError and CoalescingTimeoutError reach callers of the engine
as hard failures; SourceUnavailableError is normally absorbed into a
degraded fallback result.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """
    Base class for all engine errors.

    Includes structured error info for logging and debugging.
    """

    error_code: str = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        key: object | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.key = key
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "key": str(self.key) if self.key is not None else None,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(EngineError):
    """Invalid input or state."""

    error_code = "VALIDATION_ERROR"


class InvalidKeyError(ValidationError):
    """Malformed MetricKey (caller bug)."""

    error_code = "INVALID_KEY"


class ConfigurationError(ValidationError):
    """Settings combination that cannot work."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Source Errors
# =============================================================================


class SourceUnavailableError(EngineError):
    """Sample source failed or timed out."""

    error_code = "SOURCE_UNAVAILABLE"

    def __init__(self, message: str, *, source: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.source = source
        if source:
            self.details["source"] = source


class SourceRateLimitedError(SourceUnavailableError):
    """Source rejected the request with a rate-limit response."""

    error_code = "SOURCE_RATE_LIMITED"


# =============================================================================
# Cache Errors
# =============================================================================


class CoalescingTimeoutError(EngineError):
    """A caller gave up waiting on an in-flight computation."""

    error_code = "COALESCING_TIMEOUT"

    def __init__(self, message: str, *, timeout_seconds: float, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds
