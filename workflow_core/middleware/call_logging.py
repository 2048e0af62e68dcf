"""Call Logging Middleware - start/end/duration logging around entry points"""
import functools
from typing import Any, Callable, Optional, TypeVar

from ..domain.errors import DomainError
from ..utils.logger import get_logger
from ..utils.time import utc_now, elapsed_ms

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)


def log_call(operation: Optional[str] = None) -> Callable[[F], F]:
    """
    Decorator that logs the wrapped call with its duration

    Domain errors are logged as warnings, anything else as errors with the
    traceback. The exception is always re-raised.

    Args:
        operation: Name written to the log records (defaults to the qualified function name)
    """

    def decorator(func: F) -> F:
        name = operation or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = utc_now()
            logger.debug(f"{name} started", extra={"operation": name})
            try:
                result = func(*args, **kwargs)
            except DomainError as e:
                logger.warning(
                    f"{name} failed: {e.error_code} - {e.message}",
                    extra={"operation": name, "error_code": e.error_code, "duration_ms": elapsed_ms(started)}
                )
                raise
            except Exception:
                logger.exception(
                    f"{name} failed unexpectedly",
                    extra={"operation": name, "duration_ms": elapsed_ms(started)}
                )
                raise
            logger.debug(
                f"{name} completed",
                extra={"operation": name, "duration_ms": elapsed_ms(started)}
            )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
