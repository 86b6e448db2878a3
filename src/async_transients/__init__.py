"""
Async transients: stale-while-revalidate caching on top of a transient store.

Expose storage backends, the StaleCache engine, regeneration scheduling, and
query caches under `async_transients`.
"""

from .exceptions import (
    TransientError,
    ConfigurationError,
    StorageError,
    RegenerationFailed,
)
from .storage import (
    CacheEntry,
    TransientStore,
    InMemTransientStore,
    RedisTransientStore,
    validate_transient_store,
)
from .registry import NamedCacheRegistry
from .scheduler import (
    RegenerationJob,
    DeferredJobRunner,
    APSchedulerJobRunner,
    QueuedJobRunner,
    RegenerationScheduler,
)
from .cache import (
    CacheDescriptor,
    EntryState,
    StaleCache,
    ValueFactory,
    truncate_key,
)
from .events import EventBus, Record, RecordEvent, Subscription
from .query import QueryCache, QueryCacheManager, resolve_record_type

__all__ = [
    "TransientError",
    "ConfigurationError",
    "StorageError",
    "RegenerationFailed",
    "CacheEntry",
    "TransientStore",
    "InMemTransientStore",
    "RedisTransientStore",
    "validate_transient_store",
    "NamedCacheRegistry",
    "RegenerationJob",
    "DeferredJobRunner",
    "APSchedulerJobRunner",
    "QueuedJobRunner",
    "RegenerationScheduler",
    "CacheDescriptor",
    "EntryState",
    "StaleCache",
    "ValueFactory",
    "truncate_key",
    "EventBus",
    "Record",
    "RecordEvent",
    "Subscription",
    "QueryCache",
    "QueryCacheManager",
    "resolve_record_type",
]
