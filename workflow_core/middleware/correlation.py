"""
Correlation ID Middleware

Assigns a correlation ID to each engine or batch call for tracing and logging.
"""

import functools
from typing import Any, Callable, TypeVar

from ..utils.logger import get_correlation_id, set_correlation_id, reset_correlation_id
from ..utils.idgen import generate_correlation_id

F = TypeVar("F", bound=Callable[..., Any])


def with_correlation_id(func: F) -> F:
    """
    Decorator that runs the call under a correlation ID.

    - Keeps the caller's correlation ID when one is already set
    - Generates a new ID otherwise and restores the previous value afterwards
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if get_correlation_id():
            return func(*args, **kwargs)

        token = set_correlation_id(generate_correlation_id())
        try:
            return func(*args, **kwargs)
        finally:
            reset_correlation_id(token)

    return wrapper  # type: ignore[return-value]
