"""
Name -> cache lookup used by deferred regeneration dispatch.

Deferred jobs only carry a cache name, so the dispatch callback needs a way
back to the owning StaleCache. Caches are added on activation and removed on
teardown.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .cache import StaleCache

logger = logging.getLogger(__name__)


class NamedCacheRegistry:
    """Thread-safe mapping of cache name to StaleCache instance."""

    def __init__(self):
        self._caches: dict[str, StaleCache] = {}
        self._lock = threading.RLock()

    def register(self, cache: StaleCache) -> None:
        """Add cache under its name. Re-registering the same instance is a no-op."""
        name = cache.name
        if not name:
            raise ConfigurationError("Cannot register a cache without a name")
        with self._lock:
            existing = self._caches.get(name)
            if existing is not None and existing is not cache:
                raise ConfigurationError(f"Cache name already registered: {name}")
            self._caches[name] = cache
        logger.debug(f"Registered cache: {name}")

    def unregister(self, name: str) -> StaleCache | None:
        """Remove and return the cache registered under name, if any."""
        with self._lock:
            cache = self._caches.pop(name, None)
        if cache is not None:
            logger.debug(f"Unregistered cache: {name}")
        return cache

    def get(self, name: str) -> StaleCache:
        """Look up a cache by name. Raises KeyError if unknown."""
        with self._lock:
            return self._caches[name]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._caches)

    def clear(self) -> None:
        with self._lock:
            self._caches.clear()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._caches

    def __len__(self) -> int:
        with self._lock:
            return len(self._caches)
