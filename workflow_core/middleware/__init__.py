"""Middleware - decorators composed around engine and service entry points"""
from .correlation import with_correlation_id
from .call_logging import log_call
from .transaction import transactional
from .caching import ReadThroughCache

__all__ = [
    "with_correlation_id",
    "log_call",
    "transactional",
    "ReadThroughCache",
]
