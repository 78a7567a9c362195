from typing import Optional, Dict, Any


class BackofficeException(Exception):
    """Base exception for all Backoffice errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ExternalAPIError(BackofficeException):
    """Raised when an upstream API (identity provider) call fails."""

    def __init__(self, message: str, code: str = "external_api_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details)


class ConfigurationError(BackofficeException):
    """Raised when integration or application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(BackofficeException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class ConflictError(BackofficeException):
    """Raised when an operation collides with one already in progress."""

    def __init__(self, message: str, code: str = "conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)
