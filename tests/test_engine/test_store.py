"""Tests for querycache.store -- entry lifecycle, staleness and garbage collection."""

from __future__ import annotations

import asyncio

import pytest

from querycache.bus import CacheEvent, SubscriptionBus
from querycache.exceptions import ConfigurationError
from querycache.keys import canonicalize
from querycache.models import (
    CacheEventType,
    FetchMode,
    FetchStatus,
    QueryFilters,
    QueryOptions,
    QueryStatus,
    QueryType,
)
from querycache.store import EntryStore, to_filters

KEY = canonicalize(["posts", 1])


async def _noop_fetch(query_key, context):
    return None


def _store(clock=None) -> tuple[EntryStore, list[tuple]]:
    """A store whose refetch hook records requests instead of fetching."""
    store = EntryStore(SubscriptionBus(), clock) if clock else EntryStore(SubscriptionBus())
    requests: list[tuple] = []
    store.set_refetch_hook(lambda key, mode: requests.append((key, mode)))
    return store, requests


class TestEnsure:
    def test_creates_pending_idle_entry(self) -> None:
        store, _ = _store()
        entry = store.ensure(KEY, ["posts", 1])
        assert entry.status == QueryStatus.PENDING
        assert entry.fetch_status == FetchStatus.IDLE
        assert entry.query_key == ["posts", 1]
        assert KEY in store
        assert len(store) == 1

    def test_returns_existing_entry(self) -> None:
        store, _ = _store()
        first = store.ensure(KEY)
        assert store.ensure(KEY) is first

    def test_latest_options_win_and_longest_gc_kept(self) -> None:
        store, _ = _store()
        store.ensure(KEY, options=QueryOptions(stale_time=1, gc_time=100))
        entry = store.ensure(KEY, options=QueryOptions(stale_time=5, gc_time=10))
        assert entry.stale_time == 5
        assert entry.gc_time == 100

    def test_initial_data_seeds_success(self, clock) -> None:
        store, _ = _store(clock)
        entry = store.ensure(KEY, options=QueryOptions(initial_data=lambda: {"id": 1}))
        assert entry.status == QueryStatus.SUCCESS
        assert entry.data == {"id": 1}
        assert entry.data_updated_at == clock.now

    def test_get_never_fetches_and_returns_copy(self) -> None:
        store, requests = _store()
        assert store.get(KEY) is None
        store.ensure(KEY, fetch_fn=_noop_fetch)
        snapshot = store.get(KEY)
        snapshot.data = "mutated"
        assert store.get(KEY).data is None
        assert requests == []


class TestWrites:
    def test_set_data_records_success(self, clock) -> None:
        store, _ = _store(clock)
        store.ensure(KEY)
        store.live(KEY).retry_count = 2
        entry = store.set_data(KEY, ["a"])
        assert entry.status == QueryStatus.SUCCESS
        assert entry.data == ["a"]
        assert entry.error is None
        assert entry.retry_count == 0
        assert entry.data_updated_at == clock.now

    def test_data_updated_at_never_decreases(self, clock) -> None:
        store, _ = _store(clock)
        store.ensure(KEY)
        store.set_data(KEY, 1)
        stamp = store.live(KEY).data_updated_at
        store.set_data(KEY, 2, updated_at=stamp - 50)
        assert store.live(KEY).data_updated_at == stamp
        assert store.live(KEY).data == 2

    def test_error_without_data_sets_error_status(self) -> None:
        store, _ = _store()
        store.ensure(KEY)
        error = RuntimeError("boom")
        entry = store.set_error(KEY, error)
        assert entry.status == QueryStatus.ERROR
        assert entry.error is error

    def test_error_after_data_keeps_success(self) -> None:
        store, _ = _store()
        store.ensure(KEY)
        store.set_data(KEY, "cached")
        entry = store.set_error(KEY, RuntimeError("refetch failed"))
        assert entry.status == QueryStatus.SUCCESS
        assert entry.data == "cached"
        assert entry.error is not None

    def test_writes_to_missing_entry_raise(self) -> None:
        store, _ = _store()
        with pytest.raises(ConfigurationError):
            store.set_data(KEY, 1)

    def test_each_write_publishes_one_snapshot(self) -> None:
        bus = SubscriptionBus()
        store = EntryStore(bus)
        store.ensure(KEY)
        events: list[CacheEvent] = []
        bus.subscribe(KEY, events.append)
        store.set_fetch_status(KEY, FetchStatus.FETCHING)
        store.set_data(KEY, 1, fetch_status=FetchStatus.IDLE)
        assert [e.entry.fetch_status for e in events] == [FetchStatus.FETCHING, FetchStatus.IDLE]
        assert events[1].entry.data == 1


class TestStaleness:
    def test_fresh_until_stale_time(self, clock) -> None:
        store, _ = _store(clock)
        store.ensure(KEY, options=QueryOptions(stale_time=10))
        store.set_data(KEY, 1)
        clock.advance(9.99)
        assert not store.live(KEY).is_stale(clock())
        clock.advance(0.01)
        assert store.live(KEY).is_stale(clock())

    def test_pending_entry_is_stale(self, clock) -> None:
        store, _ = _store(clock)
        assert store.ensure(KEY).is_stale(clock())

    def test_invalidate_keeps_data_and_marks_stale(self, clock) -> None:
        store, _ = _store(clock)
        store.ensure(KEY, options=QueryOptions(stale_time=float("inf")))
        store.set_data(KEY, "kept")
        invalidated = store.invalidate(["posts"])
        assert [e.key for e in invalidated] == [KEY]
        entry = store.live(KEY)
        assert entry.data == "kept"
        assert entry.is_stale(clock())

    def test_success_clears_invalidation(self, clock) -> None:
        store, _ = _store(clock)
        store.ensure(KEY, options=QueryOptions(stale_time=60))
        store.set_data(KEY, 1)
        store.invalidate(KEY)
        store.set_data(KEY, 2)
        assert not store.live(KEY).is_stale(clock())

    def test_invalidate_refetches_only_observed(self) -> None:
        async def scenario() -> list[tuple]:
            store, requests = _store()
            observed = canonicalize(["posts", 1])
            unobserved = canonicalize(["posts", 2])
            store.ensure(observed, fetch_fn=_noop_fetch)
            store.ensure(unobserved, fetch_fn=_noop_fetch)
            store.set_data(observed, 1)
            store.set_data(unobserved, 2)
            store.subscribe(observed, lambda e: None, fetch=False)
            store.invalidate(["posts"])
            return requests

        requests = asyncio.run(scenario())
        assert requests == [(canonicalize(["posts", 1]), FetchMode.SUPERSEDE)]

    def test_invalidate_skips_disabled(self) -> None:
        async def scenario() -> list[tuple]:
            store, requests = _store()
            store.ensure(KEY, options=QueryOptions(enabled=False), fetch_fn=_noop_fetch)
            store.subscribe(KEY, lambda e: None)
            store.invalidate(KEY)
            return requests

        assert asyncio.run(scenario()) == []


class TestSubscribe:
    def test_subscribe_fetches_missing_entry(self) -> None:
        async def scenario():
            store, requests = _store()
            store.ensure(KEY, fetch_fn=_noop_fetch)
            store.subscribe(KEY, lambda e: None)
            return requests, store.live(KEY).observer_count

        requests, count = asyncio.run(scenario())
        assert requests == [(KEY, FetchMode.JOIN)]
        assert count == 1

    def test_subscribe_honours_stale_time_boundary(self, clock) -> None:
        async def scenario() -> list[int]:
            store, requests = _store(clock)
            store.ensure(KEY, options=QueryOptions(stale_time=10), fetch_fn=_noop_fetch)
            store.set_data(KEY, 1)
            counts = []
            clock.advance(10 - 0.001)
            store.subscribe(KEY, lambda e: None)()
            counts.append(len(requests))
            clock.advance(0.002)
            store.subscribe(KEY, lambda e: None)()
            counts.append(len(requests))
            return counts

        assert asyncio.run(scenario()) == [0, 1]

    def test_refetch_on_mount_always(self) -> None:
        async def scenario() -> int:
            store, requests = _store()
            options = QueryOptions(stale_time=float("inf"), refetch_on_mount="always")
            store.ensure(KEY, options=options, fetch_fn=_noop_fetch)
            store.set_data(KEY, 1)
            store.subscribe(KEY, lambda e: None)
            return len(requests)

        assert asyncio.run(scenario()) == 1

    def test_disabled_entry_never_auto_fetches(self) -> None:
        async def scenario() -> int:
            store, requests = _store()
            store.ensure(KEY, options=QueryOptions(enabled=False), fetch_fn=_noop_fetch)
            store.subscribe(KEY, lambda e: None)
            return len(requests)

        assert asyncio.run(scenario()) == 0

    def test_subscribe_to_missing_entry_raises(self) -> None:
        store, _ = _store()
        with pytest.raises(ConfigurationError):
            store.subscribe(KEY, lambda e: None)

    def test_unsubscribe_is_idempotent(self) -> None:
        async def scenario() -> int:
            store, _ = _store()
            store.ensure(KEY)
            unsubscribe = store.subscribe(KEY, lambda e: None)
            store.subscribe(KEY, lambda e: None)
            unsubscribe()
            unsubscribe()
            return store.live(KEY).observer_count

        assert asyncio.run(scenario()) == 1


class TestRemoval:
    def test_remove_by_prefix_notifies_observers(self) -> None:
        async def scenario():
            store, _ = _store()
            for n in (1, 2):
                store.ensure(canonicalize(["posts", n]))
            store.ensure(canonicalize(["users"]))
            events: list[CacheEvent] = []
            store.subscribe(canonicalize(["posts", 1]), events.append, fetch=False)
            removed = store.remove(["posts"])
            return removed, events, len(store)

        removed, events, remaining = asyncio.run(scenario())
        assert removed == 2
        assert remaining == 1
        assert events[-1].type == CacheEventType.REMOVED

    def test_reset_restores_initial_state(self) -> None:
        store, _ = _store()
        store.ensure(KEY, options=QueryOptions(initial_data="seed"))
        store.set_data(KEY, "fetched")
        store.reset(KEY)
        assert store.live(KEY).data == "seed"

        other = canonicalize(["other"])
        store.ensure(other)
        store.set_data(other, 1)
        store.reset(other)
        assert store.live(other).status == QueryStatus.PENDING
        assert store.live(other).data is None

    def test_clear_empties_store(self) -> None:
        store, _ = _store()
        store.ensure(KEY)
        store.clear()
        assert len(store) == 0


class TestGarbageCollection:
    def test_entry_evicted_after_gc_time(self) -> None:
        gc_time = 0.2

        async def scenario() -> tuple[bool, bool]:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=gc_time))
            unsubscribe = store.subscribe(KEY, lambda e: None, fetch=False)
            unsubscribe()
            await asyncio.sleep(gc_time - 0.1)
            present_before = KEY in store
            await asyncio.sleep(0.2)
            present_after = KEY in store
            return present_before, present_after

        assert asyncio.run(scenario()) == (True, False)

    def test_subscribe_disarms_timer(self) -> None:
        async def scenario() -> bool:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=0.05))
            store.subscribe(KEY, lambda e: None, fetch=False)
            await asyncio.sleep(0.1)
            return KEY in store

        assert asyncio.run(scenario()) is True

    def test_resubscribe_before_expiry_keeps_entry(self) -> None:
        async def scenario() -> bool:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=0.1))
            store.subscribe(KEY, lambda e: None, fetch=False)()
            await asyncio.sleep(0.05)
            store.subscribe(KEY, lambda e: None, fetch=False)
            await asyncio.sleep(0.1)
            return KEY in store

        assert asyncio.run(scenario()) is True

    def test_fetching_entry_collected_after_fetch_settles(self) -> None:
        async def scenario() -> tuple[bool, bool]:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=0.05))
            store.set_fetch_status(KEY, FetchStatus.FETCHING)
            await asyncio.sleep(0.1)
            kept_while_fetching = KEY in store
            store.set_data(KEY, 1, fetch_status=FetchStatus.IDLE)
            await asyncio.sleep(0.1)
            return kept_while_fetching, KEY in store

        assert asyncio.run(scenario()) == (True, False)

    def test_longer_gc_time_rearms_pending_timer(self) -> None:
        async def scenario() -> tuple[bool, bool]:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=0.05))
            store.ensure(KEY, options=QueryOptions(gc_time=0.3))
            await asyncio.sleep(0.1)
            kept = KEY in store
            await asyncio.sleep(0.3)
            return kept, KEY in store

        assert asyncio.run(scenario()) == (True, False)

    def test_gc_time_raised_to_infinity_disarms_timer(self) -> None:
        async def scenario() -> bool:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=0.05))
            store.ensure(KEY, options=QueryOptions(gc_time=float("inf")))
            await asyncio.sleep(0.1)
            return KEY in store

        assert asyncio.run(scenario()) is True

    def test_infinite_gc_time_never_collects(self) -> None:
        async def scenario() -> bool:
            store, _ = _store()
            store.ensure(KEY, options=QueryOptions(gc_time=float("inf")))
            await asyncio.sleep(0.01)
            return KEY in store

        assert asyncio.run(scenario()) is True

    def test_no_running_loop_skips_timer(self) -> None:
        store, _ = _store()
        store.ensure(KEY, options=QueryOptions(gc_time=0))
        assert KEY in store


class TestFilters:
    def test_to_filters_forms(self) -> None:
        assert to_filters(None) == QueryFilters()
        assert to_filters(["posts"]).query_key == ["posts"]
        predicate = lambda entry: True  # noqa: E731
        assert to_filters(predicate).predicate is predicate

    def test_find_all_by_type_and_stale(self, clock) -> None:
        async def scenario():
            store, _ = _store(clock)
            active = canonicalize(["a"])
            inactive = canonicalize(["b"])
            store.ensure(active, options=QueryOptions(stale_time=100))
            store.ensure(inactive)
            store.set_data(active, 1)
            store.subscribe(active, lambda e: None, fetch=False)
            return (
                [e.key for e in store.find_all(QueryFilters(type=QueryType.ACTIVE))],
                [e.key for e in store.find_all(QueryFilters(type=QueryType.INACTIVE))],
                [e.key for e in store.find_all(QueryFilters(stale=True))],
                [e.key for e in store.find_all(lambda e: e.has_data)],
            )

        active_keys, inactive_keys, stale_keys, with_data = asyncio.run(scenario())
        assert active_keys == [canonicalize(["a"])]
        assert inactive_keys == [canonicalize(["b"])]
        assert stale_keys == [canonicalize(["b"])]
        assert with_data == [canonicalize(["a"])]

    def test_exact_filter(self) -> None:
        store, _ = _store()
        store.ensure(canonicalize(["posts"]))
        store.ensure(canonicalize(["posts", 1]))
        found = store.find_all(QueryFilters(query_key=["posts"], exact=True))
        assert [e.key for e in found] == [canonicalize(["posts"])]
