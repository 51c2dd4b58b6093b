"""Error types for flag and experiment operations.

Validation and not-found errors are reported to the caller as-is.
``StoreError`` is what store implementations raise when their backend is
unavailable; evaluation paths absorb it, administrative paths re-raise it as
``InternalError``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCodes:
    """Machine-readable error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ExperimentsError(Exception):
    """Base class for all errors raised by this package."""

    default_code = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for a JSON error body."""
        result: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class RequestValidationError(ExperimentsError):
    """The request is well-formed but violates a business rule."""

    default_code = ErrorCodes.VALIDATION_ERROR


class NotFoundError(ExperimentsError):
    """A flag, experiment or override addressed directly does not exist."""

    default_code = ErrorCodes.NOT_FOUND


class StoreError(ExperimentsError):
    """The persistence backend failed."""

    default_code = ErrorCodes.STORE_UNAVAILABLE


class InternalError(ExperimentsError):
    """A dependency failure surfaced on an administrative path."""

    default_code = ErrorCodes.INTERNAL_ERROR
