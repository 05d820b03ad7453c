"""
Application error taxonomy.

Every error raised across a service boundary derives from AppError so the
API layer can render it with a stable status code and machine-readable code.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        payload = {
            "status": "error",
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    """Malformed input. The message is shown to the caller verbatim."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    """
    Entity absent or not owned by the caller.

    The message never distinguishes the two cases.
    """
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class PaymentRequiredError(AppError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"


class RateLimitError(AppError):
    status_code = 429
    code = "RATE_LIMITED"


class ExternalServiceError(AppError):
    """Cloud or AI API failure not attributable to the caller. Safe to retry."""
    status_code = 503
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: Optional[str] = None):
        super().__init__(
            message or f"{service} is temporarily unavailable. Please try again.",
            details={"service": service, "retryable": True},
        )
        self.service = service
        self.retryable = True


class GenerationError(AppError):
    """AI output could not be used as a configuration."""
    status_code = 422
    code = "GENERATION_FAILED"

    REPHRASE_HINT = "Try rephrasing the request with the resources and region you need."

    def __init__(self, message: str):
        super().__init__(message, details={"hint": self.REPHRASE_HINT})


class ProvisioningError(AppError):
    """The provisioning tool exited unsuccessfully."""
    status_code = 502
    code = "PROVISIONING_FAILED"

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output
