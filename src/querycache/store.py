"""Entry store: the single owner of every :class:`~querycache.models.CacheEntry`.

The store maps each :class:`~querycache.keys.CanonicalKey` to exactly one
live entry and owns its lifecycle:

* **Creation** -- :meth:`EntryStore.ensure` creates a ``pending`` entry (or
  seeds it from ``initial_data``).
* **Writes** -- :meth:`EntryStore.set_data`, :meth:`EntryStore.set_error`
  and :meth:`EntryStore.set_fetch_status`. Each write publishes one
  snapshot on the :class:`~querycache.bus.SubscriptionBus`.
* **Staleness** -- :meth:`EntryStore.invalidate` marks entries stale
  without dropping their data and asks observed ones to refetch.
* **Garbage collection** -- when an entry's observer count drops to zero a
  timer is armed for ``gc_time`` seconds on the running event loop; it is
  disarmed by the next subscribe. Entries with a fetch in flight are not
  collected until it settles.

The store never calls fetch functions itself. Fetches it wants (on
subscribe, on invalidation) go through the refetch hook installed by
:class:`~querycache.client.QueryClient`, which routes them to the
:class:`~querycache.coordinator.FetchCoordinator`.

Methods other than :meth:`EntryStore.get` and :meth:`EntryStore.entries`
return the *live* entry for use by the other engine components; consumers
should only ever see snapshots.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable, Optional, Union

from querycache.bus import Observer, SubscriptionBus
from querycache.exceptions import ConfigurationError
from querycache.keys import CanonicalKey, canonicalize, matches_key
from querycache.models import (
    CacheEntry,
    CacheEventType,
    FetchMode,
    FetchStatus,
    QueryFilters,
    QueryOptions,
    QueryStatus,
    QueryType,
)
from querycache.output import debug

Matcher = Union[QueryFilters, Callable[[CacheEntry], bool], Any, None]
RefetchHook = Callable[[CanonicalKey, FetchMode], Any]


def to_filters(matcher: Matcher) -> QueryFilters:
    """Normalise the accepted matcher forms into :class:`QueryFilters`.

    ``None`` matches everything, a callable is used as a predicate, and
    anything else is taken as a partial query key.
    """
    if matcher is None:
        return QueryFilters()
    if isinstance(matcher, QueryFilters):
        return matcher
    if callable(matcher):
        return QueryFilters(predicate=matcher)
    return QueryFilters(query_key=matcher)


class EntryStore:
    """Keyed store of cache entries with staleness and garbage collection.

    Args:
        bus: Bus used to publish every entry change.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        bus: SubscriptionBus,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self._entries: dict[CanonicalKey, CacheEntry] = {}
        self._gc_timers: dict[CanonicalKey, asyncio.TimerHandle] = {}
        self._subscriptions: dict[int, CanonicalKey] = {}
        self._refetch_hook: Optional[RefetchHook] = None

    def now(self) -> float:
        return self._clock()

    def set_refetch_hook(self, hook: Optional[RefetchHook]) -> None:
        """Install the callable the store uses to request background fetches."""
        self._refetch_hook = hook

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def get(self, key: CanonicalKey) -> Optional[CacheEntry]:
        """Return a snapshot of the entry for *key*, or ``None``. Never fetches."""
        entry = self._entries.get(key)
        return entry.snapshot() if entry is not None else None

    def live(self, key: CanonicalKey) -> Optional[CacheEntry]:
        """Return the live entry for *key*. For engine components only."""
        return self._entries.get(key)

    def entries(self) -> list[CacheEntry]:
        """Snapshots of every entry, in creation order."""
        return [entry.snapshot() for entry in self._entries.values()]

    def find_all(self, matcher: Matcher = None) -> list[CacheEntry]:
        """Return the live entries selected by *matcher*."""
        filters = to_filters(matcher)
        partial = (
            canonicalize(filters.query_key) if filters.query_key is not None else None
        )
        now = self.now()
        return [
            entry
            for entry in list(self._entries.values())
            if self._matches(entry, filters, partial, now)
        ]

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def ensure(
        self,
        key: CanonicalKey,
        query_key: Any = None,
        options: Optional[QueryOptions] = None,
        fetch_fn: Optional[Callable[..., Any]] = None,
    ) -> CacheEntry:
        """Return the live entry for *key*, creating a ``pending`` one if missing.

        When the entry exists, non-``None`` *options* and *fetch_fn* replace
        the stored ones so the latest caller's configuration wins; the
        entry keeps the longest ``gc_time`` it has been given.
        """
        entry = self._entries.get(key)
        if entry is not None:
            if options is not None:
                entry.options = options
                entry.stale_time = options.stale_time
                if options.gc_time > entry.gc_time:
                    entry.gc_time = options.gc_time
                    if key in self._gc_timers:
                        self._schedule_gc(entry)
            if fetch_fn is not None:
                entry.fetch_fn = fetch_fn
            return entry

        options = options or QueryOptions()
        entry = CacheEntry(
            key=key,
            query_key=query_key,
            stale_time=options.stale_time,
            gc_time=options.gc_time,
            options=options,
            fetch_fn=fetch_fn,
            observer_count=sum(1 for k in self._subscriptions.values() if k == key),
        )
        if options.initial_data is not None:
            initial = options.initial_data
            entry.data = initial() if callable(initial) else initial
            entry.status = QueryStatus.SUCCESS
            entry.data_updated_at = (
                options.initial_data_updated_at
                if options.initial_data_updated_at is not None
                else self.now()
            )
        self._entries[key] = entry
        debug(f"Created entry {key} ({entry.status.value})")
        if entry.observer_count == 0:
            self._schedule_gc(entry)
        return entry

    def set_data(
        self,
        key: CanonicalKey,
        value: Any,
        updated_at: Optional[float] = None,
        fetch_status: Optional[FetchStatus] = None,
    ) -> CacheEntry:
        """Record a successful result for *key* and publish it."""
        entry = self._require(key)
        now = updated_at if updated_at is not None else self.now()
        entry.data = value
        entry.error = None
        entry.status = QueryStatus.SUCCESS
        entry.data_updated_at = max(entry.data_updated_at, now)
        entry.retry_count = 0
        entry.is_invalidated = False
        if fetch_status is not None:
            entry.fetch_status = fetch_status
        self._publish(entry)
        self._rearm_gc(entry)
        return entry

    def set_error(
        self,
        key: CanonicalKey,
        error: BaseException,
        fetch_status: Optional[FetchStatus] = None,
    ) -> CacheEntry:
        """Record a failed fetch for *key* and publish it.

        Entries that already hold data keep it and stay ``success``; only an
        entry without data moves to ``error``.
        """
        entry = self._require(key)
        entry.error = error
        entry.error_updated_at = self.now()
        if not entry.has_data:
            entry.status = QueryStatus.ERROR
        if fetch_status is not None:
            entry.fetch_status = fetch_status
        self._publish(entry)
        self._rearm_gc(entry)
        return entry

    def set_fetch_status(
        self,
        key: CanonicalKey,
        status: FetchStatus,
        retry_count: Optional[int] = None,
    ) -> CacheEntry:
        entry = self._require(key)
        entry.fetch_status = status
        if retry_count is not None:
            entry.retry_count = retry_count
        self._publish(entry)
        self._rearm_gc(entry)
        return entry

    def invalidate(self, matcher: Matcher = None, refetch: bool = True) -> list[CacheEntry]:
        """Mark matching entries stale and refetch the observed ones.

        Data is kept; the entries simply stop counting as fresh until their
        next successful fetch. Returns snapshots of the invalidated entries.
        """
        matched = self.find_all(matcher)
        for entry in matched:
            entry.is_invalidated = True
            self._publish(entry)
        debug(f"Invalidated {len(matched)} entr{'y' if len(matched) == 1 else 'ies'}")
        if refetch:
            for entry in matched:
                if entry.observer_count > 0 and entry.options.enabled:
                    self._request_fetch(entry.key, FetchMode.SUPERSEDE)
        return [entry.snapshot() for entry in matched]

    def reset(self, matcher: Matcher = None) -> list[CacheEntry]:
        """Return matching entries to their initial state (``initial_data`` or ``pending``)."""
        matched = self.find_all(matcher)
        for entry in matched:
            initial = entry.options.initial_data
            if initial is not None:
                entry.data = initial() if callable(initial) else initial
                entry.status = QueryStatus.SUCCESS
            else:
                entry.data = None
                entry.status = QueryStatus.PENDING
            entry.error = None
            entry.retry_count = 0
            entry.is_invalidated = False
            self._publish(entry)
        return [entry.snapshot() for entry in matched]

    def remove(self, matcher: Matcher = None) -> int:
        """Delete matching entries outright and publish their removal."""
        matched = self.find_all(matcher)
        for entry in matched:
            self._delete(entry)
        return len(matched)

    def clear(self) -> None:
        self.remove(None)

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #

    def subscribe(
        self,
        key: CanonicalKey,
        observer: Observer,
        fetch: bool = True,
    ) -> Callable[[], None]:
        """Observe *key*, disarm its gc timer, and fetch it if missing or stale.

        Returns an idempotent ``unsubscribe`` callable.

        Raises:
            ConfigurationError: If no entry exists for *key*.
        """
        entry = self._require(key)
        handle = self._bus.subscribe(key, observer)
        self._subscriptions[handle] = key
        entry.observer_count += 1
        self._cancel_gc(key)
        debug(f"Subscribed to {key} (observers: {entry.observer_count})")

        if fetch and self._should_fetch_on_subscribe(entry):
            self._request_fetch(key, FetchMode.JOIN)

        def unsubscribe() -> None:
            self._unsubscribe(handle)

        return unsubscribe

    def _unsubscribe(self, handle: int) -> None:
        key = self._subscriptions.pop(handle, None)
        if key is None:
            return
        self._bus.unsubscribe(handle)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.observer_count = max(0, entry.observer_count - 1)
        debug(f"Unsubscribed from {key} (observers: {entry.observer_count})")
        if entry.observer_count == 0:
            self._schedule_gc(entry)

    def _should_fetch_on_subscribe(self, entry: CacheEntry) -> bool:
        options = entry.options
        if not options.enabled or entry.fetch_fn is None:
            return False
        if not entry.has_data:
            return True
        if options.refetch_on_mount == "always":
            return True
        return bool(options.refetch_on_mount) and entry.is_stale(self.now())

    # ------------------------------------------------------------------ #
    # Garbage collection
    # ------------------------------------------------------------------ #

    def _schedule_gc(self, entry: CacheEntry) -> None:
        self._cancel_gc(entry.key)
        if math.isinf(entry.gc_time):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            debug(f"No running event loop; gc for {entry.key} not armed")
            return
        self._gc_timers[entry.key] = loop.call_later(entry.gc_time, self._collect, entry.key)

    def _rearm_gc(self, entry: CacheEntry) -> None:
        """Arm gc for an unobserved, idle entry that has no timer yet."""
        if (
            entry.observer_count == 0
            and entry.fetch_status == FetchStatus.IDLE
            and entry.key not in self._gc_timers
            and self._entries.get(entry.key) is entry
        ):
            self._schedule_gc(entry)

    def _cancel_gc(self, key: CanonicalKey) -> None:
        timer = self._gc_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _collect(self, key: CanonicalKey) -> None:
        self._gc_timers.pop(key, None)
        entry = self._entries.get(key)
        if entry is None or entry.observer_count > 0:
            return
        if entry.fetch_status != FetchStatus.IDLE:
            # collected once the fetch settles (see set_fetch_status)
            return
        debug(f"Garbage collected {key}")
        self._delete(entry)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _require(self, key: CanonicalKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            raise ConfigurationError(f"No cache entry for {key}")
        return entry

    def _delete(self, entry: CacheEntry) -> None:
        self._cancel_gc(entry.key)
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        self._bus.publish(entry.key, entry.snapshot(), CacheEventType.REMOVED)

    def _publish(self, entry: CacheEntry) -> None:
        self._bus.publish(entry.key, entry.snapshot())

    def _request_fetch(self, key: CanonicalKey, mode: FetchMode) -> None:
        if self._refetch_hook is None:
            debug(f"No refetch hook installed; skipping fetch for {key}")
            return
        self._refetch_hook(key, mode)

    @staticmethod
    def _matches(
        entry: CacheEntry,
        filters: QueryFilters,
        partial: Optional[CanonicalKey],
        now: float,
    ) -> bool:
        if partial is not None and not matches_key(partial, entry.key, filters.exact):
            return False
        if filters.type == QueryType.ACTIVE and entry.observer_count == 0:
            return False
        if filters.type == QueryType.INACTIVE and entry.observer_count > 0:
            return False
        if filters.stale is not None and entry.is_stale(now) != filters.stale:
            return False
        if filters.fetching is not None:
            if (entry.fetch_status == FetchStatus.FETCHING) != filters.fetching:
                return False
        if filters.predicate is not None and not filters.predicate(entry):
            return False
        return True
