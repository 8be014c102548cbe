"""Subscription bus delivering cache entry snapshots to observers.

Observers register per :class:`~querycache.keys.CanonicalKey` and receive
a :class:`CacheEvent` for every change to that key's entry. Delivery is
synchronous: :meth:`SubscriptionBus.publish` returns only after every
observer has been called. A publish issued from inside an observer is
queued behind the one being delivered, so observers of a key always see
mutations in the order they happened.

Observers that raise are reported through :func:`querycache.output.warning`
and do not prevent delivery to the remaining observers, mirroring how
plugin error hooks are isolated from each other.
"""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from querycache.keys import CanonicalKey
from querycache.models import CacheEntry, CacheEventType
from querycache.output import debug, warning


@dataclass(frozen=True)
class CacheEvent:
    """One change notification.

    Attributes:
        type: ``UPDATED`` for any state change, ``REMOVED`` when the entry
            left the store.
        key: Key of the entry that changed.
        entry: Snapshot of the entry after the change (the last state for
            ``REMOVED``).
    """

    type: CacheEventType
    key: CanonicalKey
    entry: CacheEntry


Observer = Callable[[CacheEvent], None]


class SubscriptionBus:
    """Per-key fan-out of :class:`CacheEvent` notifications."""

    def __init__(self) -> None:
        self._observers: dict[CanonicalKey, dict[int, Observer]] = {}
        self._handles: dict[int, CanonicalKey] = {}
        self._counter = itertools.count(1)
        self._queue: deque[CacheEvent] = deque()
        self._draining = False

    def subscribe(self, key: CanonicalKey, observer: Observer) -> int:
        """Register *observer* for *key* and return its opaque handle."""
        handle = next(self._counter)
        self._observers.setdefault(key, {})[handle] = observer
        self._handles[handle] = key
        return handle

    def unsubscribe(self, handle: int) -> bool:
        """Remove the observer behind *handle*. Returns ``False`` if it was already gone."""
        key = self._handles.pop(handle, None)
        if key is None:
            return False
        observers = self._observers.get(key)
        if observers is not None:
            observers.pop(handle, None)
            if not observers:
                del self._observers[key]
        return True

    def observer_count(self, key: CanonicalKey) -> int:
        return len(self._observers.get(key, {}))

    def publish(
        self,
        key: CanonicalKey,
        snapshot: CacheEntry,
        type: CacheEventType = CacheEventType.UPDATED,
    ) -> None:
        """Deliver *snapshot* to every observer currently registered for *key*."""
        self._queue.append(CacheEvent(type=type, key=key, entry=snapshot))
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                self._deliver(self._queue.popleft())
        finally:
            self._draining = False

    def _deliver(self, event: CacheEvent) -> None:
        observers = self._observers.get(event.key)
        if not observers:
            return
        for handle in list(observers):
            observer: Optional[Observer] = observers.get(handle)
            if observer is None:
                # unsubscribed by an earlier observer of this event
                continue
            try:
                observer(event)
            except Exception as exc:
                warning(f"Observer {handle} for {event.key} raised: {exc!r}")
        debug(f"Published {event.type.value} for {event.key} to {len(observers)} observer(s)")
