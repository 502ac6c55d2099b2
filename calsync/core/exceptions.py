# calsync/core/exceptions.py
from typing import Dict, Any, Optional
from fastapi import HTTPException, status


class BusinessException(Exception):
    """Base exception for business rule violations."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "business_error"

    def __init__(
        self, message: str, code: str = None, details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert this exception to an HTTPException"""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "error": self.code,
                "message": self.message,
                **({"details": self.details} if self.details else {}),
            },
        )


# Resource-related exceptions
class ResourceNotFoundException(BusinessException):
    """Exception raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "resource_not_found"


class DuplicateResourceException(BusinessException):
    """Exception raised when attempting to create a duplicate resource."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "resource_already_exists"


class ValidationException(BusinessException):
    """Exception raised when input validation fails."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "validation_error"


# Scheduling conflicts
class ConflictException(BusinessException):
    """Exception raised when a write collides with concurrent state."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "conflict"


class SlotHeldException(ConflictException):
    """Exception raised when a slot is held by another in-progress booking."""

    error_code = "slot_held"


# Authentication and Authorization exceptions
class AuthorizationException(BusinessException):
    """Exception raised for authorization failures."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "authorization_error"


class ReauthorizationRequiredException(BusinessException):
    """Exception raised when a calendar account must be reconnected by a human."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "reauthorization_required"


# External Service exceptions
class ExternalServiceException(BusinessException):
    """Exception raised when an external service call fails."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "external_service_error"


class ServiceTimeoutException(BusinessException):
    """Exception raised when an external service times out."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_code = "service_timeout"


class RateLimitException(BusinessException):
    """Exception raised when rate limits are hit."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limit_exceeded"


