"""Fetch coordinator: deduplication, retry, supersession and cancellation.

:class:`FetchCoordinator` runs every fetch as an :class:`asyncio.Task` and
keeps at most one *current* fetch per key. A request for a key that already
has one in flight is resolved according to its :class:`~querycache.models.FetchMode`:

* ``JOIN`` -- the caller awaits the in-flight fetch; no second call is made.
* ``SUPERSEDE`` -- a new fetch starts and the old one becomes obsolete. The
  old network call is allowed to finish but its result is ignored, and its
  awaiters receive the new fetch's outcome instead.
* ``QUEUE`` -- the caller waits for the in-flight fetch to settle and then
  starts its own. Page fetches use this so forward and backward fetches on
  one entry never overlap.

Failures go to the entry's :class:`~querycache.retry.RetryPolicy`. A
retriable failure sleeps for the policy's delay inside the fetch task
(other cache operations keep running) and tries again with
``fetch_status`` still ``fetching``; subscribers hear nothing until the
chain ends. Only the final outcome is written to the store, and only if
the fetch is still current and its entry was not removed in the meantime.

:meth:`FetchCoordinator.cancel` rejects the awaiters of matching fetches at
once with :class:`~querycache.exceptions.CancellationError`, sets the
context's ``signal``, and cancels the task; nothing the task produces
afterwards is written.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from querycache.exceptions import CancellationError, ConfigurationError
from querycache.keys import CanonicalKey
from querycache.models import CacheEntry, FetchDirection, FetchMode, FetchStatus
from querycache.output import debug
from querycache.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, RetryPolicy
from querycache.store import EntryStore, Matcher


@dataclass
class FetchContext:
    """Per-fetch information handed to the fetch function.

    Attributes:
        key: Canonical key of the entry being fetched.
        query_key: The identifier the entry was created with.
        retry_count: Failures so far in this fetch's retry chain.
        page_param: Cursor of the page being fetched (infinite entries).
        direction: Which end of an infinite entry is being extended.
        signal: Set when the fetch is cancelled; long-running fetch
            functions may watch it to stop early.
    """

    key: CanonicalKey
    query_key: Any = None
    retry_count: int = 0
    page_param: Any = None
    direction: Optional[FetchDirection] = None
    signal: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.signal.is_set()


FetchFn = Callable[[Any, FetchContext], Awaitable[Any]]


@dataclass(eq=False)
class _FetchOperation:
    id: int
    key: CanonicalKey
    entry: CacheEntry
    context: FetchContext
    future: asyncio.Future
    task: Optional[asyncio.Task] = None
    obsolete: bool = False


class FetchCoordinator:
    """Sequences fetches per key on top of an :class:`~querycache.store.EntryStore`.

    Args:
        store: The store results are written to.
        base_delay: Backoff base handed to each entry's retry policy.
        max_delay: Backoff cap handed to each entry's retry policy.
    """

    def __init__(
        self,
        store: EntryStore,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self._store = store
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._in_flight: dict[CanonicalKey, _FetchOperation] = {}
        self._ids = itertools.count(1)
        self._online = True
        self._online_event = asyncio.Event()
        self._online_event.set()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def request(
        self,
        key: CanonicalKey,
        fetch_fn: Optional[FetchFn] = None,
        mode: FetchMode = FetchMode.JOIN,
        page_param: Any = None,
        direction: Optional[FetchDirection] = None,
    ) -> Any:
        """Fetch *key* (or join its in-flight fetch) and return the result.

        *fetch_fn* defaults to the entry's stored fetch function.

        Raises:
            CancellationError: If the fetch is cancelled while awaited.
            ConfigurationError: If the entry is missing or has no fetch function.
            Exception: The fetch function's final error once retries are exhausted.
        """
        if mode == FetchMode.QUEUE:
            await self.wait_idle(key)
        future = self.start(key, fetch_fn, mode, page_param, direction)
        return await asyncio.shield(future)

    async def wait_idle(self, key: CanonicalKey) -> None:
        """Wait until no fetch is in flight for *key*. Never raises the fetch's error."""
        while (current := self._current(key)) is not None and not current.future.done():
            debug(f"Waiting for fetch #{current.id} on {key} to settle")
            await asyncio.wait([current.future])

    def start(
        self,
        key: CanonicalKey,
        fetch_fn: Optional[FetchFn] = None,
        mode: FetchMode = FetchMode.JOIN,
        page_param: Any = None,
        direction: Optional[FetchDirection] = None,
    ) -> asyncio.Future:
        """Start (or join) a fetch without awaiting it. Requires a running loop."""
        entry = self._store.live(key)
        if entry is None:
            raise ConfigurationError(f"No cache entry for {key}")
        fetch_fn = fetch_fn or entry.fetch_fn
        if fetch_fn is None:
            raise ConfigurationError(f"No fetch function registered for {key}")

        current = self._current(key)
        superseded: Optional[_FetchOperation] = None
        if current is not None:
            if mode == FetchMode.JOIN:
                debug(f"Joining fetch #{current.id} for {key}")
                return current.future
            superseded = current

        loop = asyncio.get_running_loop()
        op = _FetchOperation(
            id=next(self._ids),
            key=key,
            entry=entry,
            context=FetchContext(
                key=key,
                query_key=entry.query_key,
                page_param=page_param,
                direction=direction,
            ),
            future=loop.create_future(),
        )
        op.future.add_done_callback(_consume_exception)
        if superseded is not None:
            superseded.obsolete = True
            op.future.add_done_callback(lambda done: _relay(done, superseded.future))
            debug(f"Fetch #{op.id} supersedes fetch #{superseded.id} for {key}")

        self._in_flight[key] = op
        debug(f"Starting fetch #{op.id} for {key}")
        self._store.set_fetch_status(
            key,
            FetchStatus.FETCHING if self._online else FetchStatus.PAUSED,
            retry_count=0,
        )
        op.task = loop.create_task(self._run(op, fetch_fn, self._policy_for(entry)))
        return op.future

    def refetch(self, key: CanonicalKey, mode: FetchMode = FetchMode.JOIN) -> Optional[asyncio.Future]:
        """Re-enter :meth:`start` with the entry's stored fetch function.

        Used by focus, reconnect, interval and invalidation triggers. Returns
        ``None`` when the entry is gone or cannot be fetched.
        """
        entry = self._store.live(key)
        if entry is None or entry.fetch_fn is None:
            return None
        return self.start(key, mode=mode)

    def cancel(self, matcher: Matcher = None) -> int:
        """Cancel in-flight fetches for matching entries. Returns how many were cancelled."""
        cancelled = 0
        for entry in self._store.find_all(matcher):
            op = self._in_flight.pop(entry.key, None)
            if op is None:
                continue
            op.obsolete = True
            op.context.signal.set()
            if not op.future.done():
                op.future.set_exception(CancellationError(f"Fetch for {entry.key} was cancelled"))
            if op.task is not None:
                op.task.cancel()
            self._store.set_fetch_status(entry.key, FetchStatus.IDLE)
            debug(f"Cancelled fetch #{op.id} for {entry.key}")
            cancelled += 1
        return cancelled

    def future_for(self, key: CanonicalKey) -> Optional[asyncio.Future]:
        """The awaitable of the current fetch for *key*, if any."""
        op = self._current(key)
        return op.future if op is not None else None

    def is_fetching(self, key: CanonicalKey) -> bool:
        return self._current(key) is not None

    @property
    def in_flight_count(self) -> int:
        return sum(1 for key in list(self._in_flight) if self._current(key) is not None)

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Pause (``False``) or resume (``True``) fetch attempts."""
        self._online = online
        if online:
            self._online_event.set()
        else:
            self._online_event.clear()

    # ------------------------------------------------------------------ #
    # Fetch task
    # ------------------------------------------------------------------ #

    async def _run(self, op: _FetchOperation, fetch_fn: FetchFn, policy: RetryPolicy) -> None:
        attempt = 0
        try:
            while True:
                await self._wait_until_online(op)
                if op.obsolete:
                    debug(f"Fetch #{op.id} for {op.key} superseded while paused")
                    return
                try:
                    result = await fetch_fn(op.entry.query_key, op.context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if op.obsolete:
                        debug(f"Ignoring failure of obsolete fetch #{op.id} for {op.key}: {exc!r}")
                        return
                    if not policy.should_retry(attempt, exc):
                        self._fail(op, exc, attempt)
                        return
                    delay = policy.delay_for(attempt, exc)
                    attempt += 1
                    op.context.retry_count = attempt
                    if self._is_current(op):
                        op.entry.retry_count = attempt
                    debug(
                        f"Fetch #{op.id} for {op.key} failed ({exc!r}), "
                        f"retry {attempt} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    if op.obsolete:
                        return
                    continue
                self._succeed(op, result)
                return
        except asyncio.CancelledError:
            self._abort(op)

    async def _wait_until_online(self, op: _FetchOperation) -> None:
        if self._online:
            return
        if self._is_current(op) and op.entry.fetch_status != FetchStatus.PAUSED:
            self._store.set_fetch_status(op.key, FetchStatus.PAUSED)
        debug(f"Fetch #{op.id} for {op.key} paused until online")
        await self._online_event.wait()
        if self._is_current(op):
            self._store.set_fetch_status(op.key, FetchStatus.FETCHING)

    def _succeed(self, op: _FetchOperation, result: Any) -> None:
        if op.obsolete:
            debug(f"Discarding result of obsolete fetch #{op.id} for {op.key}")
            return
        if self._is_current(op):
            del self._in_flight[op.key]
            self._store.set_data(op.key, result, fetch_status=FetchStatus.IDLE)
        else:
            self._forget(op)
            debug(f"Entry {op.key} was removed; result of fetch #{op.id} not stored")
        if not op.future.done():
            op.future.set_result(result)

    def _fail(self, op: _FetchOperation, error: BaseException, attempts: int) -> None:
        if self._is_current(op):
            del self._in_flight[op.key]
            op.entry.retry_count = attempts
            self._store.set_error(op.key, error, fetch_status=FetchStatus.IDLE)
        else:
            self._forget(op)
        debug(f"Fetch #{op.id} for {op.key} failed after {attempts} retr{'y' if attempts == 1 else 'ies'}")
        if not op.future.done():
            op.future.set_exception(error)

    def _abort(self, op: _FetchOperation) -> None:
        if self._in_flight.get(op.key) is op:
            del self._in_flight[op.key]
            if self._store.live(op.key) is op.entry:
                self._store.set_fetch_status(op.key, FetchStatus.IDLE)
        if not op.future.done():
            op.future.set_exception(CancellationError(f"Fetch for {op.key} was cancelled"))

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _current(self, key: CanonicalKey) -> Optional[_FetchOperation]:
        """The in-flight fetch for *key*, dropping it if its entry was replaced."""
        op = self._in_flight.get(key)
        if op is None:
            return None
        if self._store.live(key) is not op.entry:
            del self._in_flight[key]
            return None
        return op

    def _is_current(self, op: _FetchOperation) -> bool:
        return (
            not op.obsolete
            and self._in_flight.get(op.key) is op
            and self._store.live(op.key) is op.entry
        )

    def _forget(self, op: _FetchOperation) -> None:
        if self._in_flight.get(op.key) is op:
            del self._in_flight[op.key]

    def _policy_for(self, entry: CacheEntry) -> RetryPolicy:
        return RetryPolicy.from_options(entry.options, self._base_delay, self._max_delay)


def _relay(source: asyncio.Future, target: asyncio.Future) -> None:
    """Copy the outcome of *source* onto *target* unless it already settled."""
    if target.done():
        return
    if source.cancelled():
        target.cancel()
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())


def _consume_exception(future: asyncio.Future) -> None:
    # background fetches may have no awaiter; mark the exception retrieved
    if not future.cancelled():
        future.exception()
