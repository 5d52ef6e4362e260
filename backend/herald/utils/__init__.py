"""
Utility modules for Herald.
"""
from herald.utils.logger import setup_logger
from herald.utils.cache import TTLCache
from herald.utils.timeutil import utcnow, to_ms, from_ms

__all__ = [
    "setup_logger",
    "TTLCache",
    "utcnow",
    "to_ms",
    "from_ms",
]
