"""Caching Middleware - keyed read-through cache for configuration lookups"""
import copy
import threading
from typing import Any, Callable, Dict, Hashable

from ..utils.logger import get_logger

logger = get_logger(__name__)


class ReadThroughCache:
    """
    Thread-safe keyed cache

    Values are loaded on first access and kept until clear() is called.
    Callers get deep copies, so changing a returned value never changes the
    cached one. A load that overlaps a clear() is returned but not kept.
    A disabled cache always calls the loader.
    """

    def __init__(self, name: str, enabled: bool = True):
        self.name = name
        self.enabled = enabled
        self._values: Dict[Hashable, Any] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        if not self.enabled:
            return loader()
        with self._lock:
            if key in self._values:
                self.hits += 1
                return copy.deepcopy(self._values[key])
            generation = self._generation
        value = loader()
        with self._lock:
            self.misses += 1
            if generation == self._generation:
                self._values[key] = value
            else:
                logger.debug(f"Cache {self.name} cleared while loading {key!r}, not kept")
        return copy.deepcopy(value)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            if self._values:
                logger.debug(f"Cache {self.name} cleared ({len(self._values)} entries)")
            self._values.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
