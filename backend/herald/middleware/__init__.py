"""
Middleware modules for Herald.
"""
from herald.middleware.correlation import (
    CorrelationIdMiddleware,
    bind_correlation_id,
    correlation_id_filter,
    get_correlation_id,
)

__all__ = ["CorrelationIdMiddleware", "bind_correlation_id", "correlation_id_filter", "get_correlation_id"]
