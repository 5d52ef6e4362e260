"""
Correlation ID middleware for request tracing.

Background batch processing reuses the same context variable so every log
line written while handling one batch carries the batch id.
"""
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# Context variable to store correlation ID for the current request or batch
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the correlation ID for the current context."""
    return correlation_id_var.get()


def new_correlation_id() -> str:
    """Short 8-char ID for readability."""
    return str(uuid.uuid4())[:8]


@contextmanager
def bind_correlation_id(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag everything logged inside the block with a correlation ID.

    Args:
        correlation_id: ID to bind, generated when omitted

    Yields:
        The bound correlation ID
    """
    value = correlation_id or new_correlation_id()
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a correlation ID to each request.

    The correlation ID is:
    1. Read from X-Correlation-ID header if present (for distributed tracing)
    2. Generated as a new short ID if not present
    3. Stored in context for access in logs
    4. Added to response headers
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next):
        with bind_correlation_id(request.headers.get(self.HEADER_NAME)) as correlation_id:
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = correlation_id
            return response


def correlation_id_filter(record):
    """
    Loguru filter that adds correlation_id to log records.
    """
    record["extra"]["correlation_id"] = get_correlation_id() or "-"
    return True
