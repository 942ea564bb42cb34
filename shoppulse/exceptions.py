"""Custom exceptions for ShopPulse.

Defines the error taxonomy shared by the pipeline engines and the API layer.
Request-path errors carry an HTTP status code so the API can surface them
directly; pipeline errors are logged and resolved internally.
"""

from typing import Any, Dict, Optional


class ShopPulseException(Exception):
    """Base exception for ShopPulse errors."""

    error_code = "internal_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP status code for API responses
            details: Additional error details for debugging
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class ValidationError(ShopPulseException):
    """Raised when a request is missing a required identifier or is out of range."""

    error_code = "validation_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=400, details=details)


class NotFoundError(ShopPulseException):
    """Raised when a referenced product or entity does not exist."""

    error_code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        message = f"{entity_type.capitalize()} with ID {entity_id} not found"
        super().__init__(
            message=message,
            status_code=404,
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class ComputationError(ShopPulseException):
    """Raised when there is not enough data for a calculation.

    Never surfaced to callers: the strategy resolver treats it as the signal
    to try the next strategy in a fallback chain.
    """

    error_code = "insufficient_data"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=422, details=details)


class PersistenceError(ShopPulseException):
    """Raised when the backing store cannot serve a read or write."""

    error_code = "store_unavailable"

    def __init__(self, operation: str, error: Exception):
        message = f"Store operation '{operation}' failed: {str(error)}"
        super().__init__(
            message=message,
            status_code=503,
            details={
                "operation": operation,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


class JobError(ShopPulseException):
    """Raised when a scheduled or queued job fails."""

    error_code = "job_failed"

    def __init__(self, job_name: str, error: Exception, attempts: int = 1):
        message = f"Job '{job_name}' failed after {attempts} attempt(s): {str(error)}"
        super().__init__(
            message=message,
            status_code=500,
            details={
                "job_name": job_name,
                "attempts": attempts,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
