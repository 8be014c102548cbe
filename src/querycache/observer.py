"""Query observer: a consumer's live view of one cache entry.

A :class:`QueryObserver` is what a UI layer (or the CLI) holds on to. While
subscribed it keeps its entry alive, lets the store fetch it when it is
missing or stale, and turns every cache event into a
:class:`~querycache.models.QueryResult` for its listeners.

The result is computed at read time, never stored:

* ``select`` is applied to the cached data on every read.
* ``placeholder_data`` is shown while the entry has no data yet; a
  callable receives the data the observer showed for its previous key, so
  ``placeholder_data=keep_previous_data`` keeps the last page on screen
  while the next one loads.
* ``has_next_page`` / ``has_previous_page`` are derived for infinite
  entries.

``refetch_interval`` polls the entry while the observer is subscribed,
pausing while the client is unfocused unless
``refetch_interval_in_background`` is set.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Optional

from querycache.bus import CacheEvent
from querycache.infinite import has_next_page, has_previous_page
from querycache.keys import CanonicalKey, canonicalize
from querycache.models import (
    FetchMode,
    InfiniteData,
    InfiniteQueryOptions,
    QueryOptions,
    QueryResult,
    QueryStatus,
)
from querycache.output import debug

if TYPE_CHECKING:
    from querycache.client import QueryClient

Listener = Callable[[QueryResult], None]


def keep_previous_data(previous: Any) -> Any:
    """``placeholder_data`` function that keeps showing the previous key's data."""
    return previous


class QueryObserver:
    """Subscribes to one query key and projects its entry for consumers.

    Args:
        client: The owning :class:`~querycache.client.QueryClient`.
        query_key: Identifier of the observed query.
        fetch_fn: Fetch function for the key; may be omitted when the entry
            already has one.
        options: Per-query options, merged over the client defaults.
        listener: Optional callable receiving every new :class:`QueryResult`.
    """

    def __init__(
        self,
        client: QueryClient,
        query_key: Any,
        fetch_fn: Optional[Callable[..., Any]] = None,
        options: Optional[QueryOptions] = None,
        listener: Optional[Listener] = None,
    ) -> None:
        self._client = client
        self._query_key = query_key
        self._key = canonicalize(query_key)
        self._fetch_fn = fetch_fn
        self._options = options
        self._listeners: list[Listener] = [listener] if listener is not None else []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._interval_task: Optional[asyncio.Task] = None
        self._previous_data: Any = None

    @property
    def key(self) -> CanonicalKey:
        return self._key

    @property
    def query_key(self) -> Any:
        return self._query_key

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def options(self) -> QueryOptions:
        """Options of the observed entry, or the resolved defaults before mounting."""
        entry = self._client.store.live(self._key)
        if entry is not None:
            return entry.options
        return self._options or self._client.config.queries

    # ------------------------------------------------------------------ #
    # Subscription
    # ------------------------------------------------------------------ #

    def subscribe(self, listener: Optional[Listener] = None) -> Callable[[], None]:
        """Add *listener* and start observing. Returns a callable removing it."""
        if listener is not None:
            self._listeners.append(listener)
        if not self.is_subscribed:
            self._mount()

        def remove() -> None:
            if listener is not None and listener in self._listeners:
                self._listeners.remove(listener)
            if not self._listeners:
                self.unsubscribe()

        return remove

    def unsubscribe(self) -> None:
        """Stop observing. The entry's gc timer starts if this was its last observer."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stop_interval()
        self._client._forget_observer(self)

    def __enter__(self) -> QueryObserver:
        self.subscribe()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    def set_query_key(self, query_key: Any, fetch_fn: Optional[Callable[..., Any]] = None) -> None:
        """Switch to another key, remembering the current data for placeholders."""
        current = self._client.store.live(self._key)
        if current is not None and current.has_data:
            self._previous_data = current.data
        was_subscribed = self.is_subscribed
        if was_subscribed:
            self._unsubscribe()
            self._unsubscribe = None
            self._stop_interval()
        self._query_key = query_key
        self._key = canonicalize(query_key)
        if fetch_fn is not None:
            self._fetch_fn = fetch_fn
        debug(f"Observer switched to {self._key}")
        if was_subscribed:
            self._mount()
        self._notify()

    async def wait(self) -> QueryResult:
        """Wait for the fetch in flight for the observed key, then return the result.

        Errors are not raised; they show up on the result.
        """
        await self._client.coordinator.wait_idle(self._key)
        return self.result()

    async def refetch(self) -> QueryResult:
        """Fetch the entry now, superseding any fetch in flight, and return the new result."""
        self._ensure_entry()
        future = self._client.coordinator.refetch(self._key, FetchMode.SUPERSEDE)
        if future is not None:
            await asyncio.shield(future)
        return self.result()

    # ------------------------------------------------------------------ #
    # Result projection
    # ------------------------------------------------------------------ #

    def result(self) -> QueryResult:
        """Current :class:`QueryResult` for the observed key."""
        entry = self._client.store.get(self._key)
        options = entry.options if entry is not None else (self._options or QueryOptions())
        if entry is None:
            result = QueryResult()
        else:
            result = QueryResult(
                data=entry.data if entry.has_data else None,
                error=entry.error,
                status=entry.status,
                fetch_status=entry.fetch_status,
                data_updated_at=entry.data_updated_at,
                error_updated_at=entry.error_updated_at,
                failure_count=entry.retry_count,
                is_stale=entry.is_stale(self._client.store.now()),
            )

        raw = result.data
        if result.is_pending and options.placeholder_data is not None:
            placeholder = options.placeholder_data
            raw = placeholder(self._previous_data) if callable(placeholder) else placeholder
            if raw is not None:
                result.status = QueryStatus.SUCCESS
                result.is_placeholder_data = True

        if isinstance(options, InfiniteQueryOptions):
            pages = raw if isinstance(raw, InfiniteData) else None
            result.has_next_page = has_next_page(pages, options)
            result.has_previous_page = has_previous_page(pages, options)

        if raw is not None and options.select is not None:
            raw = options.select(raw)
        result.data = raw
        return result

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _ensure_entry(self) -> None:
        self._client.build_query(self._query_key, self._fetch_fn, self._options)

    def _mount(self) -> None:
        self._ensure_entry()
        self._client._remember_observer(self)
        self._unsubscribe = self._client.store.subscribe(self._key, self._on_event)
        self._start_interval()

    def _on_event(self, event: CacheEvent) -> None:
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        result = self.result()
        for listener in list(self._listeners):
            listener(result)

    def _start_interval(self) -> None:
        interval = self.options.refetch_interval
        if interval is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            debug(f"No running event loop; polling of {self._key} not started")
            return
        self._interval_task = loop.create_task(self._poll(interval))

    def _stop_interval(self) -> None:
        if self._interval_task is not None:
            self._interval_task.cancel()
            self._interval_task = None

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            options = self.options
            if not options.enabled:
                continue
            if not self._client.is_focused and not options.refetch_interval_in_background:
                continue
            debug(f"Interval refetch of {self._key}")
            self._client.coordinator.refetch(self._key)
