"""Watched keyed collection: an in-memory store with change notifications.

One collection holds the current objects of a single kind, keyed by
``(namespace, name)``. It is fed by a watcher (list + watch) and read by
the ResourceCache. Every mutation that changes the stored object notifies
the subscribed handlers with a CacheEvent.

Resync upserts (same resourceVersion as the stored object) are silent so
that periodic relists do not trigger reconciliation passes.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, Protocol, TypeVar

import structlog

from kubepat.observability.metrics import cache_events_total

_log = structlog.get_logger(component="cache.collection")


class Keyed(Protocol):
    namespace: str
    name: str
    resource_version: str


T = TypeVar("T", bound=Keyed)


class EventAction(StrEnum):
    """Kind of change observed on a collection."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class CacheEvent:
    """Change notification raised by a WatchedCollection."""

    kind: str
    action: EventAction
    namespace: str
    name: str


ChangeHandler = Callable[[CacheEvent], None]


class WatchedCollection(Generic[T]):
    """Thread-safe keyed store of the latest known objects of one kind.

    Handlers are invoked synchronously on the thread performing the
    mutation, after the store lock is released. A handler that raises is
    logged and does not affect the other handlers or the caller.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._items: dict[tuple[str, str], T] = {}
        self._handlers: list[ChangeHandler] = []
        self._lock = threading.Lock()
        self._synced = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def list(self) -> list[T]:
        """Return a snapshot of every stored object."""
        with self._lock:
            return list(self._items.values())

    def get(self, namespace: str, name: str) -> T | None:
        with self._lock:
            return self._items.get((namespace, name))

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def synced(self) -> bool:
        """True once the initial list has been loaded."""
        return self._synced

    def mark_synced(self) -> None:
        self._synced = True

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, handler: ChangeHandler) -> None:
        self._handlers.append(handler)

    def _notify(self, events: Iterable[CacheEvent]) -> None:
        for event in events:
            cache_events_total.labels(kind=event.kind, action=event.action.value).inc()
            for handler in list(self._handlers):
                try:
                    handler(event)
                except Exception as exc:  # noqa: BLE001
                    _log.error(
                        "cache_handler_error",
                        kind=event.kind,
                        action=event.action.value,
                        namespace=event.namespace,
                        name=event.name,
                        error=str(exc),
                    )

    # ------------------------------------------------------------------
    # Mutation (called by watchers)
    # ------------------------------------------------------------------

    def upsert(self, obj: T) -> CacheEvent | None:
        """Store *obj*, returning the emitted event or None for a resync."""
        key = (obj.namespace, obj.name)
        with self._lock:
            previous = self._items.get(key)
            if previous is not None and obj.resource_version and previous.resource_version == obj.resource_version:
                return None
            self._items[key] = obj
        action = EventAction.ADDED if previous is None else EventAction.MODIFIED
        event = CacheEvent(kind=self.kind, action=action, namespace=obj.namespace, name=obj.name)
        self._notify([event])
        return event

    def remove(self, namespace: str, name: str) -> CacheEvent | None:
        """Delete the object stored under (namespace, name), if any."""
        with self._lock:
            previous = self._items.pop((namespace, name), None)
        if previous is None:
            return None
        event = CacheEvent(kind=self.kind, action=EventAction.DELETED, namespace=namespace, name=name)
        self._notify([event])
        return event

    def replace_all(self, objs: Iterable[T]) -> list[CacheEvent]:
        """Replace the whole contents (relist), emitting one event per difference."""
        incoming = {(obj.namespace, obj.name): obj for obj in objs}
        events: list[CacheEvent] = []
        with self._lock:
            for key, obj in incoming.items():
                previous = self._items.get(key)
                if previous is None:
                    events.append(CacheEvent(self.kind, EventAction.ADDED, *key))
                elif not obj.resource_version or previous.resource_version != obj.resource_version:
                    events.append(CacheEvent(self.kind, EventAction.MODIFIED, *key))
            for key in self._items.keys() - incoming.keys():
                events.append(CacheEvent(self.kind, EventAction.DELETED, *key))
            self._items = incoming
        self._notify(events)
        return events
