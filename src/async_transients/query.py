"""
Query-result caches kept in step with record events.

QueryCache wraps a StaleCache whose value factory runs a query, and wires
record events to it: deleting a record of the cache's type drops the entry,
saving one queues a background regeneration.

QueryCacheManager does the same for a family of per-record caches whose
names come from a printf-style template such as "related_posts_%d".
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from .cache import DEFAULT_TIMEOUT, EntryState, StaleCache, truncate_key
from .events import EventBus, Record, RecordEvent, Subscription
from .scheduler import RegenerationScheduler
from .storage import InMemTransientStore, TransientStore

logger = logging.getLogger(__name__)

DEFAULT_RECORD_TYPE = "post"
MANAGED_TIMEOUT = 500

Query = Callable[[dict], Any]
QueryArgsFilter = Callable[[dict, str, Any], dict]


def resolve_record_type(
    record_type: str | None = None, query_args: Mapping[str, Any] | None = None
) -> str:
    """Explicit record type, else the one in query_args, else "post"."""
    if record_type:
        return record_type
    if query_args and query_args.get("record_type"):
        return str(query_args["record_type"])
    return DEFAULT_RECORD_TYPE


class QueryCache:
    """
    Stale-while-revalidate cache of a query result.

    Example:
        events = EventBus()
        recent = QueryCache(
            "recent_articles",
            lambda args: db.find_articles(**args),
            query_args={"limit": 10},
            record_type="article",
            events=events,
            scheduler=scheduler,
        ).activate()

        recent.get()
        events.publish(RecordEvent.DELETED, Record(7, "article"))  # entry dropped
    """

    def __init__(
        self,
        name: str,
        query: Query,
        *,
        query_args: Mapping[str, Any] | None = None,
        record_type: str | None = None,
        events: EventBus | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        always_return_stale: bool = True,
        store: TransientStore | None = None,
        scheduler: RegenerationScheduler | None = None,
    ):
        self.query = query
        self.query_args: dict = dict(query_args or {})
        self.record_type = resolve_record_type(record_type, self.query_args)
        self.events = events
        self.cache = StaleCache(
            name,
            self._run_query,
            timeout=timeout,
            always_return_stale=always_return_stale,
            store=store,
            scheduler=scheduler,
        )
        self._subscriptions: list[Subscription] = []

    @property
    def name(self) -> str:
        return self.cache.name

    def set_query_args(self, args: Mapping[str, Any]) -> None:
        """Merge args over the current query args."""
        self.query_args = {**self.query_args, **args}

    def _run_query(self, key: str) -> Any:
        logger.debug(f"Running query for {key}: {self.query_args}")
        return self.query(dict(self.query_args))

    def activate(self) -> QueryCache:
        self.cache.activate()
        if self.events is not None and not self._subscriptions:
            self._subscriptions = [
                self.events.subscribe(
                    RecordEvent.DELETED, self.on_record_deleted, self.record_type
                ),
                self.events.subscribe(
                    RecordEvent.SAVED, self.on_record_saved, self.record_type
                ),
            ]
        return self

    def close(self) -> None:
        if self.events is not None:
            for subscription in self._subscriptions:
                self.events.unsubscribe(subscription)
        self._subscriptions = []
        self.cache.close()

    def on_record_deleted(self, record: Record) -> None:
        if record.is_revision or record.record_type != self.record_type:
            return
        self.cache.invalidate()

    def on_record_saved(self, record: Record) -> None:
        if record.is_revision or record.record_type != self.record_type:
            return
        self.schedule_regeneration()

    def schedule_regeneration(self) -> bool:
        """Queue a background regeneration. False if one is already pending."""
        return self.cache.scheduler.schedule_once(self.name)

    def get(self, fresh: bool = False) -> Any:
        return self.cache.get(fresh)

    def invalidate(self) -> None:
        self.cache.invalidate()

    def regenerate(self) -> Any:
        return self.cache.regenerate()

    def state(self) -> EntryState:
        return self.cache.state()


class QueryCacheManager:
    """
    Per-record query caches named from a template.

    Saving a record of record_type creates (or reuses) the cache named
    `name_template % record.id` and queues its regeneration; deleting one
    removes that key from the store.

    Example:
        manager = QueryCacheManager(
            "related_%d",
            "article",
            lambda args: db.related_articles(args["article_id"]),
            events=events,
            scheduler=scheduler,
            query_args_filter=lambda args, key, record_id: {
                **args, "article_id": record_id
            },
        )
    """

    def __init__(
        self,
        name_template: str,
        record_type: str,
        query: Query,
        *,
        events: EventBus,
        store: TransientStore | None = None,
        scheduler: RegenerationScheduler | None = None,
        query_args: Mapping[str, Any] | None = None,
        query_args_filter: QueryArgsFilter | None = None,
        timeout: int = MANAGED_TIMEOUT,
    ):
        self.name_template = name_template
        self.record_type = record_type
        self.query = query
        self.events = events
        self.store = store if store is not None else InMemTransientStore()
        self.scheduler = (
            scheduler if scheduler is not None else RegenerationScheduler.shared()
        )
        self.query_args: dict = dict(query_args or {})
        self.query_args_filter = query_args_filter
        self.timeout = timeout
        self._caches: dict[str, QueryCache] = {}
        self._subscriptions = [
            events.subscribe(RecordEvent.SAVED, self.regenerate, record_type),
            events.subscribe(RecordEvent.DELETED, self.delete, record_type),
        ]

    def key_for(self, record_id: Any) -> str:
        """Cache name for record_id (template placeholder substituted)."""
        return truncate_key(self.name_template % record_id)

    def cache_for(self, record_id: Any) -> QueryCache | None:
        return self._caches.get(self.key_for(record_id))

    def _args_for(self, key: str, record_id: Any) -> dict:
        args = dict(self.query_args)
        if self.query_args_filter is not None:
            args = self.query_args_filter(args, key, record_id)
        return args

    def regenerate(self, record: Record) -> QueryCache | None:
        """Queue an asynchronous rebuild of the saved record's cache."""
        if record.is_revision:
            return None

        key = self.key_for(record.id)
        args = self._args_for(key, record.id)
        cache = self._caches.get(key)
        if cache is None:
            cache = QueryCache(
                key,
                self.query,
                query_args=args,
                record_type=self.record_type,
                timeout=self.timeout,
                always_return_stale=True,
                store=self.store,
                scheduler=self.scheduler,
            ).activate()
            self._caches[key] = cache
        else:
            cache.set_query_args(args)

        cache.schedule_regeneration()
        return cache

    def delete(self, record: Record) -> None:
        """Drop the deleted record's cached entry."""
        if record.is_revision:
            return
        key = self.key_for(record.id)
        self.store.delete(key)
        logger.debug(f"Deleted cache for {self.record_type}:{record.id} ({key})")

    def close(self) -> None:
        for subscription in self._subscriptions:
            self.events.unsubscribe(subscription)
        self._subscriptions = []
        for cache in self._caches.values():
            cache.close()
        self._caches.clear()
