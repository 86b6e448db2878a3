"""
Transient storage backends.

Provides InMemTransientStore (in-memory), RedisTransientStore, and the
TransientStore protocol. A transient store is a key-value store that keeps
expiry metadata next to each value: unlike a plain TTL cache, an expired
entry stays readable through `get_entry` until it is overwritten or deleted,
which is what lets a cache serve stale data.
"""

from __future__ import annotations

import pickle
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

try:
    import redis
except ImportError:
    redis = None  # type: ignore

from .exceptions import StorageError

# Storage-level name of every entry this package writes.
KEY_PREFIX = "_transient_"


# ============================================================================
# Cache Entry - value plus expiry metadata
# ============================================================================


@dataclass
class CacheEntry:
    """Stored value with its absolute expiry time."""

    value: Any
    expires_at: float  # Unix timestamp
    created_at: float

    @classmethod
    def build(cls, value: Any, ttl: float) -> CacheEntry:
        """Create an entry expiring ttl seconds from now (0 = already expired)."""
        now = time.time()
        return cls(value=value, expires_at=now + max(ttl, 0), created_at=now)

    def is_expired(self) -> bool:
        """Check if the entry's TTL has elapsed."""
        return time.time() >= self.expires_at

    def ttl_remaining(self) -> float:
        """Seconds until expiry, 0 once expired."""
        return max(self.expires_at - time.time(), 0.0)

    def age(self) -> float:
        """Get age of entry in seconds."""
        return time.time() - self.created_at


# ============================================================================
# Storage Protocol - Common interface for all backends
# ============================================================================


class TransientStore(Protocol):
    """
    Protocol for transient storage backends.

    Both InMemTransientStore and RedisTransientStore implement these methods,
    and any host-provided store that does can back a StaleCache.
    """

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get the raw entry, even if expired. None if absent."""
        ...

    def get(self, key: str) -> Any | None:
        """Get value by key. Returns None if not found or expired."""
        ...

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value with TTL in seconds."""
        ...

    def delete(self, key: str) -> None:
        """Delete key from store."""
        ...

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        ...

    def set_if_not_exists(self, key: str, value: Any, ttl: int) -> bool:
        """
        Atomic set if not exists. Returns True if set, False if a live entry
        already exists. Used for the per-key regeneration lock.
        """
        ...

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete every entry whose storage name embeds prefix. Returns count."""
        ...

    def delete_all(self) -> int:
        """Delete every transient entry. Returns count."""
        ...


def validate_transient_store(store: Any) -> bool:
    """
    Validate that an object implements the TransientStore protocol.
    Useful for debugging host-provided stores.
    """
    required_methods = [
        "get_entry",
        "get",
        "set",
        "delete",
        "exists",
        "set_if_not_exists",
        "delete_by_prefix",
        "delete_all",
    ]
    return all(
        hasattr(store, method) and callable(getattr(store, method))
        for method in required_methods
    )


def prefix_patterns(prefix: str) -> list[str]:
    """
    Substrings identifying entries that belong to prefix.

    Covers both historical naming conventions, `transient_<prefix>` and
    `<prefix>_transient`, along with their `timeout` companions.
    """
    return [
        f"transient_{prefix}",
        f"{prefix}_transient",
        f"transient_timeout_{prefix}",
        f"{prefix}_transient_timeout",
    ]


# ============================================================================
# InMemTransientStore - In-memory storage keeping expired entries
# ============================================================================


class InMemTransientStore:
    """
    Thread-safe in-memory transient store.

    Attributes:
        _data: storage name -> entry map
        _lock: re-entrant lock to protect concurrent access
    """

    def __init__(self):
        self._data: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _make_key(key: str) -> str:
        return f"{KEY_PREFIX}{key}"

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the entry regardless of expiry."""
        with self._lock:
            return self._data.get(self._make_key(key))

    def get(self, key: str) -> Any | None:
        """Return value if key still fresh."""
        entry = self.get_entry(key)
        if entry is None or entry.is_expired():
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value for ttl seconds."""
        entry = CacheEntry.build(value, ttl)
        with self._lock:
            self._data[self._make_key(key)] = entry

    def delete(self, key: str) -> None:
        """Delete key from store."""
        with self._lock:
            self._data.pop(self._make_key(key), None)

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get(key) is not None

    def set_if_not_exists(self, key: str, value: Any, ttl: int) -> bool:
        """Atomic set if not exists. Returns True if set, False if exists."""
        with self._lock:
            entry = self._data.get(self._make_key(key))
            if entry is not None and not entry.is_expired():
                return False
            self.set(key, value, ttl)
            return True

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete entries matching either naming convention for prefix."""
        patterns = prefix_patterns(prefix)
        with self._lock:
            matched = [
                name
                for name in self._data
                if any(pattern in name for pattern in patterns)
            ]
            for name in matched:
                del self._data[name]
            return len(matched)

    def delete_all(self) -> int:
        """Delete every transient entry."""
        with self._lock:
            matched = [name for name in self._data if "transient_" in name]
            for name in matched:
                del self._data[name]
            return len(matched)


# ============================================================================
# RedisTransientStore - Redis-backed storage
# ============================================================================


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _glob_escape(text: str) -> str:
    """Escape Redis MATCH glob metacharacters."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class RedisTransientStore:
    """
    Redis-backed transient store.

    Each entry is a pickled CacheEntry under `<prefix>_transient_<key>`. The
    expiry lives inside the envelope, so expired values remain readable for
    stale serving. Set retain_seconds to let Redis drop entries that many
    seconds after they expire.

    Example:
        import redis
        client = redis.Redis(host='localhost', port=6379)
        store = RedisTransientStore(client, prefix="app:")
        store.set("user:123", {"name": "John"}, ttl=60)
    """

    def __init__(
        self, redis_client: Any, prefix: str = "", retain_seconds: int | None = None
    ):
        """
        Initialize Redis store.

        Args:
            redis_client: Redis client instance
            prefix: Key prefix for namespacing
            retain_seconds: Extra Redis-level lifetime after expiry (None = keep)
        """
        if redis is None:
            raise ImportError("redis package required. Install: pip install redis")
        self.client = redis_client
        self.prefix = prefix
        self.retain_seconds = retain_seconds

    def _make_key(self, key: str) -> str:
        """Add namespace and transient prefix to key."""
        return f"{self.prefix}{KEY_PREFIX}{key}"

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get raw entry, even if expired."""
        try:
            data = self.client.get(self._make_key(key))
        except Exception as e:
            raise StorageError(f"Redis get failed for {key}: {e}") from e
        if data is None:
            return None
        try:
            return pickle.loads(data)
        except Exception as e:
            raise StorageError(
                f"Redis entry for {key} could not be decoded: {e}"
            ) from e

    def get(self, key: str) -> Any | None:
        """Get value by key if not expired."""
        entry = self.get_entry(key)
        if entry is None or entry.is_expired():
            return None
        return entry.value

    def _redis_ttl(self, ttl: int) -> int | None:
        if self.retain_seconds is None:
            return None
        return max(max(int(ttl), 0) + self.retain_seconds, 1)

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Set value with TTL in seconds."""
        data = pickle.dumps(CacheEntry.build(value, ttl))
        try:
            self.client.set(self._make_key(key), data, ex=self._redis_ttl(ttl))
        except Exception as e:
            raise StorageError(f"Redis set failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        """Delete key from store."""
        try:
            self.client.delete(self._make_key(key))
        except Exception as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get(key) is not None

    def set_if_not_exists(self, key: str, value: Any, ttl: int) -> bool:
        """Atomic set if not exists; Redis expires the key after ttl."""
        data = pickle.dumps(CacheEntry.build(value, ttl))
        try:
            result = self.client.set(
                self._make_key(key), data, ex=ttl if ttl > 0 else None, nx=True
            )
        except Exception as e:
            raise StorageError(f"Redis set_if_not_exists failed for {key}: {e}") from e
        return bool(result)

    def _delete_matching(self, patterns: list[str]) -> int:
        deleted = 0
        try:
            for pattern in patterns:
                names = list(self.client.scan_iter(match=pattern))
                if names:
                    deleted += self.client.delete(*names)
        except Exception as e:
            raise StorageError(f"Redis bulk delete failed: {e}") from e
        return deleted

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete entries matching either naming convention for prefix."""
        namespace = _glob_escape(self.prefix)
        return self._delete_matching(
            [
                f"{namespace}*{_glob_escape(pattern)}*"
                for pattern in prefix_patterns(prefix)
            ]
        )

    def delete_all(self) -> int:
        """Delete every transient entry under this store's namespace."""
        return self._delete_matching([f"{_glob_escape(self.prefix)}*transient_*"])
