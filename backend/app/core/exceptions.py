"""Custom exceptions for application-specific error handling."""

from __future__ import annotations

from typing import Optional, Dict, Any


class MedCureException(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 400,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        self.headers = headers
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class NotFoundError(MedCureException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str = "not_found", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="NOT_FOUND", details=details, status_code=404)


class BadRequestError(MedCureException):
    """Raised when request is invalid."""

    def __init__(self, message: str = "bad_request", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="BAD_REQUEST", details=details, status_code=400)


# ===== VALIDATION EXCEPTIONS =====


class ValidationError(MedCureException):
    """Raised when notification input is malformed. Nothing has been written."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, error_code="VALIDATION_ERROR", details=details, status_code=422)
        self.field = field


# ===== DATABASE EXCEPTIONS =====


class DatabaseException(MedCureException):
    """Base exception for database errors."""


class PrimitiveUnavailable(DatabaseException):
    """Raised when a stored procedure the service relies on is not deployed."""

    def __init__(self, primitive: str):
        super().__init__(
            f"Database primitive {primitive} is not available",
            error_code="PRIMITIVE_UNAVAILABLE",
            details={"primitive": primitive},
            status_code=503,
        )
        self.primitive = primitive


class StoreError(DatabaseException):
    """Raised when a read or write against the data store fails."""

    def __init__(self, message: str, operation: Optional[str] = None):
        details = {"operation": operation} if operation else {}
        super().__init__(message, error_code="STORE_ERROR", details=details, status_code=500)
        self.operation = operation


# ===== AUTHENTICATION EXCEPTIONS =====


class AuthenticationException(MedCureException):
    """Base exception for authentication errors."""


class InsufficientPermissionsError(AuthenticationException):
    """Raised when user lacks required permissions."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, error_code="INSUFFICIENT_PERMISSIONS", status_code=403)
