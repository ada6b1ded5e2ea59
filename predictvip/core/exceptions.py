"""
Custom exception classes and error handling utilities.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger(__name__)


class PredictVipException(Exception):
    """Base exception class for the subscription service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(PredictVipException):
    """Authentication related errors."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class AuthorizationError(PredictVipException):
    """Authorization related errors."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN
        )


class SignatureVerificationError(PredictVipException):
    """Webhook signature missing or invalid."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ValidationError(PredictVipException):
    """Malformed or missing input."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class InvalidTransitionError(ValidationError):
    """Requested status transition is not allowed from the current status."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        details = {"current_status": current_status} if current_status else {}
        super().__init__(message=message, details=details)


class NotFoundError(PredictVipException):
    """Resource not found errors."""

    def __init__(self, resource: str, identifier: str = ""):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND
        )


class ConflictError(PredictVipException):
    """Operation had no effect because the target is already in the requested state."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class PersistenceError(PredictVipException):
    """Record store write or read failed."""

    def __init__(self, message: str = "Failed to persist subscription"):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )


# Exception handlers
async def predictvip_exception_handler(request: Request, exc: PredictVipException) -> JSONResponse:
    """Global exception handler for service exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.__class__.__name__,
                "details": exc.details,
                "status_code": exc.status_code
            }
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render framework HTTP errors in the same envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "type": "HTTPException",
                "status_code": exc.status_code
            }
        },
        headers=getattr(exc, "headers", None)
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are client errors like any other ValidationError."""
    logger.info("Request validation failed", path=request.url.path, errors=exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "message": "Input validation failed",
                "type": "ValidationError",
                "details": {"errors": jsonable_encoder(exc.errors())},
                "status_code": status.HTTP_400_BAD_REQUEST
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unexpected exceptions."""
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "type": "InternalServerError",
                "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR
            }
        }
    )
