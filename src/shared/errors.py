"""
Shared error types for the cache gateway.

Cache store failures never surface as exceptions (the store fails open);
these types cover caller mistakes on the administrative surface.
"""

from typing import Any, Dict, Optional

from .schemas import ErrorDetail, ErrorResponse


class CacheLayerError(Exception):
    """Base exception for the cache layer."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to the standard error envelope."""
        return ErrorResponse(
            error=ErrorDetail(
                type=self.code,
                message=self.message,
                request_id=request_id,
                details=self.details or None,
            )
        )


class CacheValidationError(CacheLayerError, ValueError):
    """Invalid input to a cache operation, such as an empty pattern list."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class CacheKeyNotFoundError(CacheLayerError, LookupError):
    """A key requested through the admin surface does not exist."""

    status_code = 404

    def __init__(self, key: str):
        super().__init__("not_found", f"Cache key not found: {key}", {"key": key})
