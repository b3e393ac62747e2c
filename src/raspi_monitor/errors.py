"""
Error types for the Raspberry Pi host monitor.

This module defines the MonitorError base class and the subclasses used across
the sampler, storage and endpoint layers. Endpoint handlers surface these to
the HTTP layer, which maps ``error_code`` to a response status.
"""

from __future__ import annotations

from typing import Any


class MonitorError(Exception):
    """
    Base exception class for monitor errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise MonitorError(
        ...     error_code="invalid_argument",
        ...     message="range must be a number",
        ...     details={"range": "abc"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a MonitorError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(MonitorError):
    """Error raised when a caller passes an invalid argument."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class NotFoundError(MonitorError):
    """Error raised when an endpoint or resource does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(MonitorError):
    """
    Error raised when a required resource is unavailable.

    Used when storage cannot be read or written, or a probe binary is missing.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class StorageError(UnavailableError):
    """
    Error raised when a metrics storage operation fails.

    Insert, select and prune failures are wrapped in this error. The sampler
    treats it as recoverable; query handlers let it propagate to the caller.
    """


class NotificationError(UnavailableError):
    """Error raised when a notification webhook call fails."""


class FailedPreconditionError(MonitorError):
    """
    Error raised when a precondition for the operation is not met.

    Raised when the metrics database cannot be opened at startup, or when the
    sampler is started twice.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class CollectionError(MonitorError):
    """Error raised when a whole sample could not be collected."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CollectionError."""
        super().__init__(
            error_code="collection_failed", message=message, details=details
        )


class InternalError(MonitorError):
    """
    Error raised for unexpected internal errors.

    Unexpected exceptions raised by endpoint handlers are wrapped in this error.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
