"""
Shared error handling for the Access Token Broker.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Structured view of an error, used for logging."""

    code: str
    message: str
    status_code: int
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for broker services.

    ``message`` is the only part ever rendered to a caller; ``details`` is for
    operators and goes to the logs.
    """

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            status_code=self.status_code,
            details=self.details,
        )


class ConfigurationError(AccessLayerException):
    """Startup configuration or trust-material errors. Always fatal."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(AccessLayerException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ServiceError(AccessLayerException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int = 1,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMIT_ERROR",
            message,
            details,
            headers={"Retry-After": str(retry_after)},
        )
