"""
In-process record events used to invalidate derived caches.

Handlers subscribe to "record saved" / "record deleted" events, optionally
filtered by record type, and get back a Subscription handle they use to
unsubscribe on teardown.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class RecordEvent(str, Enum):
    SAVED = "saved"
    DELETED = "deleted"


@dataclass(frozen=True)
class Record:
    """Minimal view of a content record carried by an event."""

    id: Any
    record_type: str
    is_revision: bool = False


RecordHandler = Callable[[Record], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    event: RecordEvent
    handler: RecordHandler
    record_type: str | None = None

    def matches(self, event: RecordEvent, record: Record) -> bool:
        if self.event is not event:
            return False
        return self.record_type is None or self.record_type == record.record_type


class EventBus:
    """Synchronous publish/subscribe for record events."""

    def __init__(self):
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        event: RecordEvent,
        handler: RecordHandler,
        record_type: str | None = None,
    ) -> Subscription:
        """Call handler for every matching event until unsubscribed."""
        with self._lock:
            subscription = Subscription(
                id=next(self._ids),
                event=RecordEvent(event),
                handler=handler,
                record_type=record_type,
            )
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def publish(self, event: RecordEvent, record: Record) -> int:
        """
        Deliver event to matching handlers in subscription order.

        Returns the number of handlers called. A failing handler is logged
        and its exception propagates to the publisher.
        """
        event = RecordEvent(event)
        with self._lock:
            targets = [
                sub for sub in self._subscriptions.values() if sub.matches(event, record)
            ]

        for sub in targets:
            try:
                sub.handler(record)
            except Exception:
                logger.error(
                    f"Handler for {event.value} {record.record_type}:{record.id} failed",
                    exc_info=True,
                )
                raise
        return len(targets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)
