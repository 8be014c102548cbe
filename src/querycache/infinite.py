"""Infinite page manager: one cache entry holding an ordered list of pages.

An infinite entry stores an :class:`~querycache.models.InfiniteData` value:
the fetched pages plus the cursor ("page param") each page was fetched
with. Its options are :class:`~querycache.models.InfiniteQueryOptions`.

* :meth:`InfinitePageManager.fetch_next_page` derives the cursor after the
  last page with ``get_next_page_param`` and appends the fetched page.
* :meth:`InfinitePageManager.fetch_previous_page` derives the cursor before
  the first page with ``get_previous_page_param`` and prepends it.
* A refetch (stale on subscribe, invalidation, manual) runs
  :class:`PagedFetch`, which refetches every loaded page in stored cursor
  order and replaces the whole value with a single write.

Page fetches go through the coordinator in ``QUEUE`` mode, so forward and
backward fetches on one entry never overlap. Whether more pages exist is
never stored: :func:`has_next_page` and :func:`has_previous_page`
recompute it from the current pages on every call.

The page function has the usual fetch signature ``(query_key, context)``
and reads its cursor from ``context.page_param``::

    async def fetch_users(query_key, ctx):
        return await api.get_users(page=ctx.page_param)
"""

from __future__ import annotations

import dataclasses
import inspect
from typing import Any, Callable, Optional

from querycache.coordinator import FetchContext, FetchCoordinator, FetchFn
from querycache.exceptions import ConfigurationError
from querycache.keys import CanonicalKey
from querycache.models import (
    CacheEntry,
    FetchDirection,
    FetchMode,
    InfiniteData,
    InfiniteQueryOptions,
)
from querycache.output import debug
from querycache.store import EntryStore


def _call_param_fn(
    fn: Callable[..., Any],
    page: Any,
    pages: list[Any],
    param: Any,
    params: list[Any],
) -> Any:
    """Call a page-param function with as many of its four arguments as it accepts."""
    args = (page, pages, param, params)
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return fn(*args)
    positional = 0
    for parameter in signature.parameters.values():
        if parameter.kind == parameter.VAR_POSITIONAL:
            return fn(*args)
        if parameter.kind in (parameter.POSITIONAL_ONLY, parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return fn(*args[:positional])


def next_page_param(data: Optional[InfiniteData], options: InfiniteQueryOptions) -> Any:
    """Cursor of the page after the last one, or ``None`` if there is none."""
    if data is None or not data.pages or options.get_next_page_param is None:
        return None
    return _call_param_fn(
        options.get_next_page_param,
        data.pages[-1],
        data.pages,
        data.page_params[-1],
        data.page_params,
    )


def previous_page_param(data: Optional[InfiniteData], options: InfiniteQueryOptions) -> Any:
    """Cursor of the page before the first one, or ``None`` if there is none."""
    if data is None or not data.pages or options.get_previous_page_param is None:
        return None
    return _call_param_fn(
        options.get_previous_page_param,
        data.pages[0],
        data.pages,
        data.page_params[0],
        data.page_params,
    )


def has_next_page(data: Optional[InfiniteData], options: InfiniteQueryOptions) -> bool:
    return next_page_param(data, options) is not None


def has_previous_page(data: Optional[InfiniteData], options: InfiniteQueryOptions) -> bool:
    return previous_page_param(data, options) is not None


class PagedFetch:
    """Entry-level fetch function of an infinite entry.

    With no pages loaded it fetches the page at ``initial_page_param``;
    otherwise it refetches every loaded page, in stored cursor order, and
    returns the new :class:`InfiniteData` in one piece.
    """

    def __init__(self, query_fn: FetchFn, store: EntryStore) -> None:
        self.query_fn = query_fn
        self._store = store

    async def __call__(self, query_key: Any, context: FetchContext) -> InfiniteData:
        entry = self._store.live(context.key)
        current = _pages_of(entry)
        if current is None or not current.pages:
            options = _infinite_options(entry, context.key)
            params = [options.initial_page_param]
        else:
            params = list(current.page_params)

        pages = []
        for param in params:
            page_context = dataclasses.replace(context, page_param=param)
            pages.append(await self.query_fn(query_key, page_context))
        debug(f"Refetched {len(pages)} page(s) for {context.key}")
        return InfiniteData(pages=pages, page_params=params)


class InfinitePageManager:
    """Forward and backward page fetching on top of the coordinator."""

    def __init__(self, store: EntryStore, coordinator: FetchCoordinator) -> None:
        self._store = store
        self._coordinator = coordinator

    def ensure(
        self,
        key: CanonicalKey,
        query_key: Any,
        query_fn: FetchFn,
        options: InfiniteQueryOptions,
    ) -> CacheEntry:
        """Create (or update) the infinite entry for *key*."""
        return self._store.ensure(key, query_key, options, PagedFetch(query_fn, self._store))

    async def fetch_next_page(self, key: CanonicalKey) -> InfiniteData:
        """Append the page after the last one. A no-op when there is none.

        On an entry without pages this fetches the initial page.

        Raises:
            ConfigurationError: If *key* is not an infinite entry or it has
                no ``get_next_page_param``.
        """
        return await self._fetch_page(key, FetchDirection.FORWARD)

    async def fetch_previous_page(self, key: CanonicalKey) -> InfiniteData:
        """Prepend the page before the first one. A no-op when there is none."""
        return await self._fetch_page(key, FetchDirection.BACKWARD)

    def has_next_page(self, key: CanonicalKey) -> bool:
        entry = self._store.live(key)
        options = _infinite_options(entry, key)
        return has_next_page(_pages_of(entry), options)

    def has_previous_page(self, key: CanonicalKey) -> bool:
        entry = self._store.live(key)
        options = _infinite_options(entry, key)
        return has_previous_page(_pages_of(entry), options)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _fetch_page(self, key: CanonicalKey, direction: FetchDirection) -> InfiniteData:
        entry = self._store.live(key)
        options = _infinite_options(entry, key)
        forward = direction == FetchDirection.FORWARD
        param_fn = options.get_next_page_param if forward else options.get_previous_page_param
        if param_fn is None:
            name = "get_next_page_param" if forward else "get_previous_page_param"
            raise ConfigurationError(f"{name} is required to page {key}")
        if not isinstance(entry.fetch_fn, PagedFetch):
            raise ConfigurationError(f"No page function registered for {key}")

        await self._coordinator.wait_idle(key)
        # re-read: the entry may have been replaced or extended while waiting
        entry = self._store.live(key)
        options = _infinite_options(entry, key)
        data = _pages_of(entry)

        if data is None or not data.pages:
            debug(f"No pages loaded for {key}; fetching the initial page")
            return await self._coordinator.request(key, mode=FetchMode.QUEUE)

        param = next_page_param(data, options) if forward else previous_page_param(data, options)
        if param is None:
            debug(f"No {'next' if forward else 'previous'} page for {key}")
            return data.model_copy()

        query_fn = entry.fetch_fn.query_fn

        async def fetch_page(query_key: Any, context: FetchContext) -> InfiniteData:
            page = await query_fn(query_key, context)
            return self._merge(key, page, param, direction, options)

        debug(f"Fetching {direction.value} page {param!r} for {key}")
        return await self._coordinator.request(
            key,
            fetch_page,
            mode=FetchMode.QUEUE,
            page_param=param,
            direction=direction,
        )

    def _merge(
        self,
        key: CanonicalKey,
        page: Any,
        param: Any,
        direction: FetchDirection,
        options: InfiniteQueryOptions,
    ) -> InfiniteData:
        current = _pages_of(self._store.live(key)) or InfiniteData()
        if direction == FetchDirection.FORWARD:
            pages = [*current.pages, page]
            params = [*current.page_params, param]
            if options.max_pages is not None and len(pages) > options.max_pages:
                pages, params = pages[-options.max_pages:], params[-options.max_pages:]
        else:
            pages = [page, *current.pages]
            params = [param, *current.page_params]
            if options.max_pages is not None and len(pages) > options.max_pages:
                pages, params = pages[: options.max_pages], params[: options.max_pages]
        return InfiniteData(pages=pages, page_params=params)


def _infinite_options(entry: Optional[CacheEntry], key: CanonicalKey) -> InfiniteQueryOptions:
    if entry is None:
        raise ConfigurationError(f"No cache entry for {key}")
    if not isinstance(entry.options, InfiniteQueryOptions):
        raise ConfigurationError(f"{key} is not an infinite query")
    return entry.options


def _pages_of(entry: Optional[CacheEntry]) -> Optional[InfiniteData]:
    if entry is None or not entry.has_data or not isinstance(entry.data, InfiniteData):
        return None
    return entry.data
