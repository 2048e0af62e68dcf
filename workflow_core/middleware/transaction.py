"""Transaction Middleware - run service methods inside a store transaction"""
import functools
from typing import Any, Callable, TypeVar

F = TypeVar("F", bound=Callable[..., Any])


def transactional(store_attr: str) -> Callable[[F], F]:
    """
    Decorator for service methods that must commit or roll back as a unit

    The store is looked up on the instance by attribute name, so the wrapped
    method joins the transaction of any outer transactional call on the same
    store.

    Args:
        store_attr: Name of the attribute holding the store (e.g. "workflow_store")
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            store = getattr(self, store_attr)
            with store.transaction():
                return func(self, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
