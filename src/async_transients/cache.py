"""
StaleCache: a named transient that never blocks readers on recomputation.

When the stored entry has expired, readers get the last known value straight
away and a one-shot regeneration job is queued; the job recomputes the value
through the cache's value factory and swaps it in.

Example:
    registry = NamedCacheRegistry()
    scheduler = RegenerationScheduler(registry, QueuedJobRunner())

    cache = StaleCache(
        "top_products",
        lambda key: db.fetch_top_products(),
        timeout=300,
        scheduler=scheduler,
    ).activate()

    products = cache.get()  # stale values come back immediately
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Protocol

from .exceptions import ConfigurationError, RegenerationFailed
from .scheduler import RegenerationScheduler
from .storage import InMemTransientStore, TransientStore

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 40
DEFAULT_TIMEOUT = 86400  # one day
DEFAULT_LOCK_TIMEOUT = 60


class ValueFactory(Protocol):
    """Produces a fresh value for a cache key."""

    def __call__(self, key: str) -> Any: ...


class EntryState(str, Enum):
    """Lifecycle of a single cache key."""

    ABSENT = "absent"
    FRESH = "fresh"
    EXPIRED = "expired"
    STALE_SERVING = "stale_serving"
    REGENERATING = "regenerating"


def truncate_key(name: str, length: int = MAX_KEY_LENGTH) -> str:
    """Cut name down to length characters. Idempotent."""
    return name[:length] if len(name) > length else name


def _coerce_timeout(timeout: Any) -> int:
    """Non-negative whole seconds; unparseable values become 0."""
    try:
        return abs(int(float(timeout)))
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class CacheDescriptor:
    """Static configuration of one StaleCache."""

    name: str
    timeout: int = DEFAULT_TIMEOUT
    always_return_stale: bool = True
    regenerate_on_expiry_even_if_not_always_stale: bool = False
    value_factory: ValueFactory | None = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "name", truncate_key(self.name or ""))
        object.__setattr__(self, "timeout", _coerce_timeout(self.timeout))

    @classmethod
    def from_mapping(
        cls, args: Mapping[str, Any], value_factory: ValueFactory | None = None
    ) -> CacheDescriptor:
        """
        Build a descriptor from construction parameters, filling defaults.

        Recognised keys: name, timeout, always_return_stale,
        regenerate_on_expiry_even_if_not_always_stale. Other keys (such as
        value) are ignored here.
        """
        return cls(
            name=str(args.get("name") or ""),
            timeout=args.get("timeout", DEFAULT_TIMEOUT),
            always_return_stale=bool(args.get("always_return_stale", True)),
            regenerate_on_expiry_even_if_not_always_stale=bool(
                args.get("regenerate_on_expiry_even_if_not_always_stale", False)
            ),
            value_factory=value_factory,
        )


class StaleCache:
    """
    Stale-while-revalidate cache bound to one key of a transient store.

    Args:
        name: Cache key (truncated to 40 characters).
        value_factory: Callable producing a fresh value for the key. When
            omitted, the cache serves whatever was last passed to write().
        timeout: TTL in seconds for stored values.
        value: Initial value, written through on activate().
        always_return_stale: Serve expired values and regenerate in the
            background. When False, expired entries are recomputed inline.
        regenerate_on_expiry_even_if_not_always_stale: With
            always_return_stale=False, still serve the expired value once and
            regenerate in the background instead of recomputing inline.
        store: Transient store (defaults to a private InMemTransientStore).
        scheduler: Regeneration scheduler; its registry resolves this cache
            when a job fires. Defaults to RegenerationScheduler.shared().
        lock_timeout: Lifetime in seconds of the per-key regeneration lock.
    """

    def __init__(
        self,
        name: str,
        value_factory: ValueFactory | None = None,
        *,
        timeout: int = DEFAULT_TIMEOUT,
        value: Any = None,
        always_return_stale: bool = True,
        regenerate_on_expiry_even_if_not_always_stale: bool = False,
        store: TransientStore | None = None,
        scheduler: RegenerationScheduler | None = None,
        lock_timeout: int = DEFAULT_LOCK_TIMEOUT,
    ):
        self.descriptor = CacheDescriptor(
            name=name,
            timeout=timeout,
            always_return_stale=always_return_stale,
            regenerate_on_expiry_even_if_not_always_stale=(
                regenerate_on_expiry_even_if_not_always_stale
            ),
            value_factory=value_factory,
        )
        self.store = store if store is not None else InMemTransientStore()
        self.scheduler = (
            scheduler if scheduler is not None else RegenerationScheduler.shared()
        )
        if lock_timeout <= 0:
            raise ConfigurationError(
                f"lock_timeout must be positive, got {lock_timeout}"
            )
        self.lock_timeout = lock_timeout
        self._value = value
        self._active = False
        self._regenerating = False

    @classmethod
    def from_mapping(
        cls,
        args: Mapping[str, Any],
        value_factory: ValueFactory | None = None,
        **kwargs: Any,
    ) -> StaleCache:
        """Build a cache from a construction-parameter mapping."""
        descriptor = CacheDescriptor.from_mapping(args, value_factory)
        return cls(
            descriptor.name,
            value_factory,
            timeout=descriptor.timeout,
            value=args.get("value"),
            always_return_stale=descriptor.always_return_stale,
            regenerate_on_expiry_even_if_not_always_stale=(
                descriptor.regenerate_on_expiry_even_if_not_always_stale
            ),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def timeout(self) -> int:
        return self.descriptor.timeout

    @property
    def active(self) -> bool:
        return self._active

    @property
    def value(self) -> Any:
        """In-memory value from the last write or computation."""
        return self._value

    def set_name(self, name: str) -> None:
        """Rename the cache. Only allowed before activation."""
        if self._active:
            raise ConfigurationError(f"Cannot rename active cache: {self.name}")
        self.descriptor = replace(self.descriptor, name=name)

    def set_timeout(self, timeout: int) -> None:
        """Change the TTL used for future writes."""
        self.descriptor = replace(self.descriptor, timeout=timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def activate(self) -> StaleCache:
        """Register with the scheduler's registry. Fails on an empty name."""
        if not self.name:
            raise ConfigurationError("Set transient name")
        if self._active:
            return self

        self.scheduler.registry.register(self)
        self._active = True
        logger.debug(f"Cache activated: {self.name}")

        if self._value is not None:
            self.write(self._value)
        return self

    def close(self) -> None:
        """Tear down: cancel any pending job and leave the registry."""
        if not self._active:
            return
        self.scheduler.cancel(self.name)
        registry = self.scheduler.registry
        if self.name in registry and registry.get(self.name) is self:
            registry.unregister(self.name)
        self._active = False
        logger.debug(f"Cache closed: {self.name}")

    def _ensure_active(self) -> None:
        if not self._active:
            raise ConfigurationError(f"Cache is not active: {self.name or '<unnamed>'}")

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def _compute(self) -> Any:
        factory = self.descriptor.value_factory
        if factory is None:
            return self._value
        return factory(self.name)

    def _refresh(self) -> Any:
        """Recompute synchronously and store with the configured TTL."""
        value = self._compute()
        self.store.set(self.name, value, self.timeout)
        self._value = value
        return value

    def get(self, fresh: bool = False) -> Any:
        """
        Read the cached value.

        A stale hit returns the stored value without calling the value
        factory and schedules one background regeneration. Misses, forced
        refreshes, and (unless configured otherwise) expired entries with
        always_return_stale=False are recomputed inline.
        """
        self._ensure_active()

        if fresh:
            logger.debug(f"Cache REFRESH (forced): {self.name}")
            return self._refresh()

        entry = self.store.get_entry(self.name)
        if entry is None:
            logger.debug(f"Cache MISS: {self.name}")
            return self._refresh()

        if not entry.is_expired():
            logger.debug(f"Cache HIT (fresh): {self.name}")
            return entry.value

        d = self.descriptor
        if d.always_return_stale or d.regenerate_on_expiry_even_if_not_always_stale:
            logger.debug(f"Cache HIT (stale): {self.name}, regenerating in background")
            self.scheduler.schedule_once(self.name)
            return entry.value

        logger.debug(f"Cache HIT (expired): {self.name}, recomputing")
        return self._refresh()

    def write(self, value: Any, reset_entry: bool = True) -> None:
        """
        Replace the in-memory value; with reset_entry, store it right away.

        Any pending regeneration is dropped, since the written value
        supersedes it.
        """
        self._value = value
        if not self._active:
            return

        self.scheduler.cancel(self.name)
        if reset_entry:
            self.store.delete(self.name)
            self.store.set(self.name, value, self.timeout)
            logger.debug(f"Cache WRITE: {self.name}")

    def invalidate(self) -> None:
        """Delete the stored entry. A pending job will recompute from scratch."""
        self._ensure_active()
        self.store.delete(self.name)
        logger.debug(f"Cache INVALIDATE: {self.name}")

    def regenerate(self) -> Any:
        """
        Recompute the value and swap it into the store.

        Called by the scheduler when a regeneration job fires. The previous
        entry is only replaced after the factory succeeds; on failure it is
        left in place and RegenerationFailed is raised. If another worker
        holds the regeneration lock, the currently stored value is returned.
        A result computed after a write superseded the job is discarded.
        """
        self._ensure_active()
        lock_key = f"{self.name}:regen_lock"
        if not self.store.set_if_not_exists(lock_key, "1", self.lock_timeout):
            logger.debug(f"Regeneration lock held elsewhere: {self.name}")
            entry = self.store.get_entry(self.name)
            return entry.value if entry is not None else None

        self._regenerating = True
        try:
            try:
                value = self._compute()
            except Exception as e:
                raise RegenerationFailed(self.name, e) from e

            if self.scheduler.is_superseded(self.name):
                logger.debug(f"Regeneration superseded by a write: {self.name}")
                return self._value

            self.store.set(self.name, value, self.timeout)
            self._value = value
            return value
        finally:
            self._regenerating = False
            self.store.delete(lock_key)

    def state(self) -> EntryState:
        """Current lifecycle state of this cache's key."""
        if self._regenerating or self.scheduler.is_running(self.name):
            return EntryState.REGENERATING

        entry = self.store.get_entry(self.name)
        if entry is None:
            return EntryState.ABSENT
        if not entry.is_expired():
            return EntryState.FRESH
        if self.scheduler.is_pending(self.name):
            return EntryState.STALE_SERVING
        return EntryState.EXPIRED

    def __repr__(self) -> str:
        return f"StaleCache(name={self.name!r}, timeout={self.timeout})"

