"""
Tests for record events and query caches.
"""

import pytest

from async_transients import (
    EntryState,
    EventBus,
    InMemTransientStore,
    NamedCacheRegistry,
    QueryCache,
    QueryCacheManager,
    QueuedJobRunner,
    Record,
    RecordEvent,
    RegenerationScheduler,
    resolve_record_type,
)


@pytest.fixture
def runner():
    return QueuedJobRunner()


@pytest.fixture
def scheduler(runner):
    return RegenerationScheduler(NamedCacheRegistry(), runner)


@pytest.fixture
def store():
    return InMemTransientStore()


@pytest.fixture
def events():
    return EventBus()


class TestEventBus:
    def test_publish_filters_by_event_and_type(self, events):
        seen = []
        events.subscribe(RecordEvent.SAVED, seen.append, record_type="article")

        assert events.publish(RecordEvent.SAVED, Record(1, "article")) == 1
        assert events.publish(RecordEvent.SAVED, Record(2, "page")) == 0
        assert events.publish(RecordEvent.DELETED, Record(3, "article")) == 0
        assert [record.id for record in seen] == [1]

    def test_untyped_subscription_sees_everything(self, events):
        seen = []
        events.subscribe(RecordEvent.DELETED, seen.append)

        events.publish(RecordEvent.DELETED, Record(1, "article"))
        events.publish(RecordEvent.DELETED, Record(2, "page"))
        assert len(seen) == 2

    def test_unsubscribe(self, events):
        seen = []
        subscription = events.subscribe(RecordEvent.SAVED, seen.append)
        events.unsubscribe(subscription)

        events.publish(RecordEvent.SAVED, Record(1, "post"))
        assert seen == []
        assert len(events) == 0

    def test_handler_error_propagates(self, events):
        def broken(record):
            raise RuntimeError("handler failed")

        events.subscribe(RecordEvent.SAVED, broken)
        with pytest.raises(RuntimeError):
            events.publish(RecordEvent.SAVED, Record(1, "post"))


class TestResolveRecordType:
    def test_explicit(self):
        assert resolve_record_type("article", {"record_type": "page"}) == "article"

    def test_from_query_args(self):
        assert resolve_record_type(None, {"record_type": "page"}) == "page"

    def test_default(self):
        assert resolve_record_type() == "post"
        assert resolve_record_type("", {"record_type": ""}) == "post"


class TestQueryCache:
    """QueryCache reacting to record events."""

    def make_cache(self, events, store, scheduler, calls):
        def query(args):
            calls.append(args)
            return [f"{args['record_type']}-{len(calls)}"]

        return QueryCache(
            "latest_articles",
            query,
            query_args={"record_type": "article", "limit": 5},
            events=events,
            timeout=60,
            store=store,
            scheduler=scheduler,
        ).activate()

    def test_runs_query_with_args(self, events, store, scheduler):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)

        assert cache.record_type == "article"
        assert cache.get() == ["article-1"]
        assert calls == [{"record_type": "article", "limit": 5}]
        assert cache.get() == ["article-1"]
        assert len(calls) == 1

    def test_deleted_record_invalidates(self, events, store, scheduler):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)
        cache.get()

        events.publish(RecordEvent.DELETED, Record(9, "article"))
        assert cache.state() is EntryState.ABSENT
        assert cache.get() == ["article-2"]

    def test_saved_record_schedules_regeneration(
        self, events, store, scheduler, runner
    ):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)
        cache.get()

        events.publish(RecordEvent.SAVED, Record(9, "article"))
        assert scheduler.is_pending("latest_articles")
        assert cache.get() == ["article-1"]

        runner.run_due()
        assert cache.get() == ["article-2"]

    def test_other_types_and_revisions_ignored(self, events, store, scheduler):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)
        cache.get()

        events.publish(RecordEvent.DELETED, Record(1, "page"))
        events.publish(RecordEvent.DELETED, Record(2, "article", is_revision=True))
        events.publish(RecordEvent.SAVED, Record(3, "article", is_revision=True))

        assert cache.state() is EntryState.FRESH
        assert not scheduler.is_pending("latest_articles")

    def test_set_query_args_merges(self, events, store, scheduler):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)
        cache.set_query_args({"limit": 10})

        cache.get()
        assert calls == [{"record_type": "article", "limit": 10}]

    def test_close_unsubscribes(self, events, store, scheduler):
        calls = []
        cache = self.make_cache(events, store, scheduler, calls)
        assert len(events) == 2

        cache.close()
        assert len(events) == 0
        assert "latest_articles" not in scheduler.registry


class TestQueryCacheManager:
    """Per-record caches named from a template."""

    def make_manager(self, events, store, scheduler, calls):
        def query(args):
            calls.append(args)
            return {"related_to": args["article_id"]}

        def add_record_id(args, key, record_id):
            return {**args, "article_id": record_id, "key": key}

        return QueryCacheManager(
            "related_%d",
            "article",
            query,
            events=events,
            store=store,
            scheduler=scheduler,
            query_args={"limit": 3},
            query_args_filter=add_record_id,
        )

    def test_key_for(self, events, store, scheduler):
        manager = self.make_manager(events, store, scheduler, [])
        assert manager.key_for(42) == "related_42"

    def test_saved_record_regenerates_asynchronously(
        self, events, store, scheduler, runner
    ):
        calls = []
        self.make_manager(events, store, scheduler, calls)

        events.publish(RecordEvent.SAVED, Record(7, "article"))
        assert scheduler.is_pending("related_7")
        assert calls == []

        runner.run_due()
        assert store.get("related_7") == {"related_to": 7}
        assert calls == [{"limit": 3, "article_id": 7, "key": "related_7"}]

        entry = store.get_entry("related_7")
        assert entry.expires_at - entry.created_at == pytest.approx(500)

    def test_saved_twice_reuses_cache(self, events, store, scheduler, runner):
        calls = []
        manager = self.make_manager(events, store, scheduler, calls)

        events.publish(RecordEvent.SAVED, Record(7, "article"))
        first = manager.cache_for(7)
        events.publish(RecordEvent.SAVED, Record(7, "article"))

        assert manager.cache_for(7) is first
        assert runner.pending_count() == 1

    def test_deleted_record_removes_entry(self, events, store, scheduler, runner):
        calls = []
        self.make_manager(events, store, scheduler, calls)
        events.publish(RecordEvent.SAVED, Record(7, "article"))
        runner.run_due()

        events.publish(RecordEvent.DELETED, Record(7, "article"))
        assert store.get_entry("related_7") is None

    def test_ignores_revisions_and_other_types(self, events, store, scheduler):
        calls = []
        manager = self.make_manager(events, store, scheduler, calls)

        events.publish(RecordEvent.SAVED, Record(7, "article", is_revision=True))
        events.publish(RecordEvent.SAVED, Record(8, "page"))

        assert manager.cache_for(7) is None
        assert manager.cache_for(8) is None
        assert scheduler.pending_jobs() == []

    def test_close(self, events, store, scheduler):
        manager = self.make_manager(events, store, scheduler, [])
        events.publish(RecordEvent.SAVED, Record(7, "article"))

        manager.close()
        assert len(events) == 0
        assert "related_7" not in scheduler.registry
        assert not scheduler.is_pending("related_7")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
