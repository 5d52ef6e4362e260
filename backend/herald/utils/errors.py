"""
Error types and helpers for safe, standardized error responses.

Delivery code raises the HeraldError subclasses below; the orchestrator turns
them into DeliveryResult values, so only the API layer converts errors into
HTTP responses.

Standard Error Response Format:
{
    "detail": {
        "code": "ERROR_CODE",
        "message": "Human readable message"
    }
}
"""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from loguru import logger
from fastapi import HTTPException


class ErrorCode(str, Enum):
    """Standardized error codes for results and API responses."""

    # Caller errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Overload / dependency errors (503)
    QUEUE_FULL = "QUEUE_FULL"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Delivery errors
    TRANSPORT_ERROR = "TRANSPORT_ERROR"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class HeraldError(Exception):
    """Base class for delivery pipeline errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value


class ValidationError(HeraldError):
    """Malformed payload or options."""
    code = ErrorCode.VALIDATION_ERROR


class QueueFullError(HeraldError):
    """The destination queue reached its configured maximum."""
    code = ErrorCode.QUEUE_FULL


class CircuitOpenError(HeraldError):
    """The circuit breaker refused the call without attempting it."""
    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, message: str = "", next_attempt_time: Optional[datetime] = None):
        super().__init__(message)
        self.next_attempt_time = next_attempt_time


class TransportError(HeraldError):
    """The delivery transport failed to deliver a payload."""
    code = ErrorCode.TRANSPORT_ERROR


class CircuitTimeoutError(TransportError):
    """A call through the breaker exceeded its timeout."""


class StoreUnavailableError(HeraldError):
    """The backing store could not be reached."""
    code = ErrorCode.STORE_UNAVAILABLE


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Build the ``detail`` body shared by every API error.

    Args:
        code: Error code
        message: Human-readable message
        status_code: HTTP status the body is sent with (not part of the body)
        details: Optional extra context
    """
    response: Dict[str, Any] = {"code": code.value, "message": message}
    if details:
        response["details"] = details
    return response


def raise_error(
    code: ErrorCode,
    message: str,
    status_code: int = 500,
    details: Optional[Dict[str, Any]] = None,
    log: bool = True
) -> None:
    """Raise an HTTPException carrying a standard error body."""
    if log:
        logger.error(f"API Error [{code.value}]: {message}")
    raise HTTPException(status_code=status_code, detail=create_error_response(code, message, status_code, details))


def log_and_raise_500(error: Exception, context: str) -> None:
    """
    Log an unexpected error and answer with a generic 500.

    Args:
        error: The caught exception
        context: What was being done, e.g. "loading preferences"
    """
    logger.error(f"Error {context}: {type(error).__name__}: {error}")
    raise_error(ErrorCode.INTERNAL_ERROR, f"Failed {context}. Please check logs for details.", 500, log=False)
