"""Query client: the explicit engine instance consumers hold.

:class:`QueryClient` owns one of each engine component and exposes the
public operations:

* **Reads** -- :meth:`~QueryClient.fetch_query`,
  :meth:`~QueryClient.prefetch_query`, :meth:`~QueryClient.ensure_query_data`,
  :meth:`~QueryClient.get_query_data`, :meth:`~QueryClient.get_entry`.
* **Writes** -- :meth:`~QueryClient.set_query_data`.
* **Observation** -- :meth:`~QueryClient.watch` and
  :meth:`~QueryClient.subscribe` return a
  :class:`~querycache.observer.QueryObserver`.
* **Bulk operations** -- :meth:`~QueryClient.invalidate_queries`,
  :meth:`~QueryClient.refetch_queries`, :meth:`~QueryClient.cancel_queries`,
  :meth:`~QueryClient.remove_queries`, :meth:`~QueryClient.reset_queries`.
  Each takes a matcher: a partial key, a predicate, or
  :class:`~querycache.models.QueryFilters`.
* **Paging** -- :meth:`~QueryClient.fetch_infinite_query` and the
  next/previous page operations.
* **Mutations** -- :meth:`~QueryClient.mutation`.
* **Signals** -- :meth:`~QueryClient.set_focused` and
  :meth:`~QueryClient.set_online` replace browser focus and connectivity
  events.

There is no global client; create one per application (or per test) and
pass it to whoever needs it. Most operations must run inside an event
loop, since fetches and gc timers are scheduled on the running loop::

    async with QueryClient() as client:
        posts = await client.fetch_query(["posts", 1], fetch_posts, stale_time=10)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from querycache.bus import SubscriptionBus
from querycache.coordinator import FetchCoordinator, FetchFn
from querycache.exceptions import ConfigurationError
from querycache.infinite import InfinitePageManager
from querycache.keys import CanonicalKey, canonicalize
from querycache.models import (
    CacheEntry,
    ClientConfig,
    FetchMode,
    FetchStatus,
    InfiniteData,
    InfiniteQueryOptions,
    MutationOptions,
    QueryFilters,
    QueryOptions,
    QueryType,
)
from querycache.mutation import Mutation
from querycache.observer import Listener, QueryObserver
from querycache.output import debug
from querycache.store import EntryStore, Matcher


class QueryClient:
    """Cache engine instance.

    Args:
        config: Client-wide defaults; see :func:`querycache.config.resolve_config`.
        clock: Monotonic time source in seconds. Tests inject a fake one.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ClientConfig()
        self._clock = clock
        self._bus = SubscriptionBus()
        self._store = EntryStore(self._bus, clock)
        self._coordinator = FetchCoordinator(
            self._store,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        self._infinite = InfinitePageManager(self._store, self._coordinator)
        self._store.set_refetch_hook(self._on_refetch_request)
        self._observers: list[QueryObserver] = []
        self._focused = True

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def coordinator(self) -> FetchCoordinator:
        return self._coordinator

    @property
    def bus(self) -> SubscriptionBus:
        return self._bus

    @property
    def is_focused(self) -> bool:
        return self._focused

    @property
    def is_online(self) -> bool:
        return self._coordinator.is_online

    # ------------------------------------------------------------------ #
    # Entries
    # ------------------------------------------------------------------ #

    def build_query(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> CacheEntry:
        """Return the live entry for *query_key*, creating or reconfiguring it.

        When the entry exists and neither *options* nor *overrides* are
        given, its current options are kept.
        """
        key = canonicalize(query_key)
        existing = self._store.live(key)
        resolved: Optional[QueryOptions] = None
        if existing is None or options is not None or overrides:
            cls = InfiniteQueryOptions if _wants_infinite(options, overrides, existing) else QueryOptions
            resolved = self._resolve(options, overrides, cls)
        if isinstance(resolved, InfiniteQueryOptions) or (
            resolved is None and existing is not None and existing.is_infinite
        ):
            if fetch_fn is None:
                if existing is None:
                    raise ConfigurationError(f"A page function is required to create {key}")
                fetch_fn = existing.fetch_fn.query_fn
            return self._infinite.ensure(key, query_key, fetch_fn, resolved or existing.options)
        return self._store.ensure(key, query_key, resolved, fetch_fn)

    def get_entry(self, query_key: Any) -> Optional[CacheEntry]:
        """Snapshot of the entry for *query_key*, or ``None``. Never fetches."""
        return self._store.get(canonicalize(query_key))

    def get_query_data(self, query_key: Any) -> Any:
        """Cached data for *query_key*, or ``None``. Never fetches."""
        entry = self.get_entry(query_key)
        return entry.data if entry is not None and entry.has_data else None

    def set_query_data(
        self,
        query_key: Any,
        updater: Any,
        updated_at: Optional[float] = None,
    ) -> Any:
        """Write data for *query_key* by hand and notify its observers.

        *updater* is the new value, or a function receiving the current
        data (``None`` if there is none) and returning the new value.
        Creates the entry with the client defaults if needed.
        """
        entry = self.build_query(query_key)
        previous = entry.data if entry.has_data else None
        value = updater(previous) if callable(updater) else updater
        self._store.set_data(entry.key, value, updated_at=updated_at)
        return value

    # ------------------------------------------------------------------ #
    # Fetching
    # ------------------------------------------------------------------ #

    async def fetch_query(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> Any:
        """Return fresh data for *query_key*, fetching only when missing or stale.

        Joins a fetch already in flight for the key.

        Raises:
            Exception: The fetch function's final error once retries are exhausted.
            CancellationError: If the fetch is cancelled while awaited.
        """
        entry = self.build_query(query_key, fetch_fn, options, **overrides)
        if entry.has_data and not entry.is_stale(self._store.now()):
            debug(f"Serving fresh data for {entry.key}")
            return entry.data
        return await self._coordinator.request(entry.key, mode=FetchMode.JOIN)

    async def prefetch_query(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> None:
        """Warm the cache for *query_key*. Failures are recorded on the entry, not raised."""
        try:
            await self.fetch_query(query_key, fetch_fn, options, **overrides)
        except ConfigurationError:
            raise
        except Exception as exc:
            debug(f"Prefetch of {canonicalize(query_key)} failed: {exc!r}")

    async def ensure_query_data(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> Any:
        """Return cached data for *query_key* even if stale; fetch only when there is none."""
        entry = self.build_query(query_key, fetch_fn, options, **overrides)
        if entry.has_data:
            return entry.data
        return await self._coordinator.request(entry.key, mode=FetchMode.JOIN)

    async def fetch_infinite_query(
        self,
        query_key: Any,
        query_fn: Optional[FetchFn] = None,
        options: Optional[InfiniteQueryOptions] = None,
        **overrides: Any,
    ) -> InfiniteData:
        """Return the pages of an infinite query, fetching the first page if needed."""
        if options is not None and not isinstance(options, InfiniteQueryOptions):
            raise ConfigurationError("fetch_infinite_query requires InfiniteQueryOptions")
        if options is None:
            options = InfiniteQueryOptions()
        return await self.fetch_query(query_key, query_fn, options, **overrides)

    async def fetch_next_page(self, query_key: Any) -> InfiniteData:
        return await self._infinite.fetch_next_page(canonicalize(query_key))

    async def fetch_previous_page(self, query_key: Any) -> InfiniteData:
        return await self._infinite.fetch_previous_page(canonicalize(query_key))

    def has_next_page(self, query_key: Any) -> bool:
        return self._infinite.has_next_page(canonicalize(query_key))

    def has_previous_page(self, query_key: Any) -> bool:
        return self._infinite.has_previous_page(canonicalize(query_key))

    # ------------------------------------------------------------------ #
    # Observation
    # ------------------------------------------------------------------ #

    def watch(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        options: Optional[QueryOptions] = None,
        listener: Optional[Listener] = None,
        **overrides: Any,
    ) -> QueryObserver:
        """Create an observer for *query_key* without subscribing it yet."""
        if options is not None or overrides:
            cls = InfiniteQueryOptions if _wants_infinite(options, overrides, None) else QueryOptions
            options = self._resolve(options, overrides, cls)
        return QueryObserver(self, query_key, fetch_fn, options, listener)

    def subscribe(
        self,
        query_key: Any,
        fetch_fn: Optional[FetchFn] = None,
        listener: Optional[Listener] = None,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> QueryObserver:
        """Create and subscribe an observer; fetches if the entry is missing or stale."""
        observer = self.watch(query_key, fetch_fn, options, listener, **overrides)
        observer.subscribe()
        return observer

    # ------------------------------------------------------------------ #
    # Bulk operations
    # ------------------------------------------------------------------ #

    async def invalidate_queries(self, matcher: Matcher = None, throw_on_error: bool = False) -> int:
        """Mark matching entries stale and wait for the observed ones to refetch.

        Returns the number of invalidated entries.
        """
        invalidated = self._store.invalidate(matcher)
        futures = []
        for snapshot in invalidated:
            if snapshot.observer_count == 0 or not snapshot.options.enabled:
                continue
            future = self._coordinator.future_for(snapshot.key)
            if future is not None:
                futures.append(future)
        await self._settle(futures, throw_on_error)
        return len(invalidated)

    async def refetch_queries(self, matcher: Matcher = None, throw_on_error: bool = False) -> int:
        """Refetch every matching entry that can be fetched, superseding fetches in flight."""
        futures = []
        for entry in self._store.find_all(matcher):
            if not entry.options.enabled:
                continue
            future = self._coordinator.refetch(entry.key, FetchMode.SUPERSEDE)
            if future is not None:
                futures.append(future)
        await self._settle(futures, throw_on_error)
        return len(futures)

    def cancel_queries(self, matcher: Matcher = None) -> int:
        """Cancel in-flight fetches of matching entries; their awaiters get ``CancellationError``."""
        return self._coordinator.cancel(matcher)

    def remove_queries(self, matcher: Matcher = None) -> int:
        """Delete matching entries. Results of their in-flight fetches are discarded."""
        removed = self._store.remove(matcher)
        debug(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}")
        return removed

    async def reset_queries(self, matcher: Matcher = None, throw_on_error: bool = False) -> int:
        """Return matching entries to their initial state and refetch the observed ones."""
        self._coordinator.cancel(matcher)
        reset = self._store.reset(matcher)
        observed = [entry.key for entry in reset if entry.observer_count > 0]
        if observed:
            await self.refetch_queries(
                QueryFilters(predicate=lambda entry: entry.key in observed, type=QueryType.ACTIVE),
                throw_on_error=throw_on_error,
            )
        return len(reset)

    def is_fetching(self, matcher: Matcher = None) -> int:
        """Number of matching entries with a fetch running."""
        return sum(
            1
            for entry in self._store.find_all(matcher)
            if entry.fetch_status == FetchStatus.FETCHING
        )

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def mutation(
        self,
        mutation_fn: Optional[Callable[[Any], Any]] = None,
        options: Optional[MutationOptions] = None,
        **hooks: Any,
    ) -> Mutation:
        """Define a mutation. Hooks may be given as keyword arguments.

        Example::

            add_post = client.mutation(api.create_post, on_settled=refresh)
        """
        if options is None:
            if mutation_fn is None:
                raise ConfigurationError("A mutation needs a mutation_fn")
            try:
                options = MutationOptions(mutation_fn=mutation_fn, **hooks)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid mutation options: {exc}") from exc
        return Mutation(options, clock=self._clock)

    # ------------------------------------------------------------------ #
    # Focus and connectivity
    # ------------------------------------------------------------------ #

    def set_focused(self, focused: bool) -> int:
        """Record focus changes. Regaining focus refetches observed stale entries.

        Returns the number of refetches started.
        """
        regained = focused and not self._focused
        self._focused = focused
        if not regained:
            return 0
        debug("Focus regained")
        return self._refetch_on("refetch_on_window_focus")

    def set_online(self, online: bool) -> int:
        """Record connectivity changes.

        Going offline pauses fetch attempts; coming back resumes them and
        refetches observed stale entries. Returns the number of refetches started.
        """
        reconnected = online and not self._coordinator.is_online
        self._coordinator.set_online(online)
        if not reconnected:
            return 0
        debug("Connection restored")
        return self._refetch_on("refetch_on_reconnect")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def clear(self) -> None:
        """Cancel every fetch and drop every entry."""
        self._coordinator.cancel(None)
        self._store.clear()

    async def close(self) -> None:
        """Unsubscribe all observers, cancel fetches and drop the cache."""
        for observer in list(self._observers):
            observer.unsubscribe()
        self.clear()
        # let cancelled fetch tasks unwind
        await asyncio.sleep(0)

    async def __aenter__(self) -> QueryClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _resolve(
        self,
        options: Optional[QueryOptions],
        overrides: dict[str, Any],
        cls: type[QueryOptions] = QueryOptions,
    ) -> QueryOptions:
        """Merge client defaults, *options* and *overrides*, field by field."""
        defaults = self.config.queries
        merged = {name: getattr(defaults, name) for name in defaults.model_fields_set}
        if options is not None:
            merged.update({name: getattr(options, name) for name in options.model_fields_set})
        merged.update(overrides)
        try:
            return cls(**merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid query options: {exc}") from exc

    def _on_refetch_request(self, key: CanonicalKey, mode: FetchMode) -> None:
        if not self._has_loop():
            debug(f"No running event loop; fetch for {key} not started")
            return
        self._coordinator.refetch(key, mode)

    def _refetch_on(self, trigger: str) -> int:
        if not self._has_loop():
            return 0
        now = self._store.now()
        started = 0
        for entry in self._store.find_all(QueryFilters(type=QueryType.ACTIVE)):
            setting = getattr(entry.options, trigger)
            if not entry.options.enabled or entry.fetch_fn is None:
                continue
            if setting == "always" or (setting and entry.is_stale(now)):
                if self._coordinator.refetch(entry.key) is not None:
                    started += 1
        return started

    async def _settle(self, futures: list[asyncio.Future], throw_on_error: bool) -> None:
        if not futures:
            return
        results = await asyncio.gather(
            *(asyncio.shield(future) for future in futures), return_exceptions=True
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            debug(f"{len(errors)} of {len(futures)} refetch(es) failed")
            if throw_on_error:
                raise errors[0]

    def _remember_observer(self, observer: QueryObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def _forget_observer(self, observer: QueryObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @staticmethod
    def _has_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True


def _wants_infinite(
    options: Optional[QueryOptions],
    overrides: dict[str, Any],
    existing: Optional[CacheEntry],
) -> bool:
    if isinstance(options, InfiniteQueryOptions):
        return True
    if existing is not None and existing.is_infinite and options is None:
        return True
    infinite_only = set(InfiniteQueryOptions.model_fields) - set(QueryOptions.model_fields)
    return bool(infinite_only & set(overrides))
