"""Tests for querycache.client -- the public QueryClient surface."""

from __future__ import annotations

import asyncio

import pytest

from querycache.api import PostsApi
from querycache.client import QueryClient
from querycache.exceptions import CancellationError, ConfigurationError
from querycache.models import (
    ApiConfig,
    ClientConfig,
    FetchStatus,
    InfiniteQueryOptions,
    QueryFilters,
    QueryOptions,
    QueryStatus,
    QueryType,
)


class TestFetchQuery:
    def test_fresh_data_served_from_cache(self, clock, recorder) -> None:
        fetch = recorder("v1", "v2")

        async def scenario():
            client = QueryClient(clock=clock)
            first = await client.fetch_query(["posts"], fetch, stale_time=10)
            clock.advance(5)
            second = await client.fetch_query(["posts"], fetch, stale_time=10)
            clock.advance(6)
            third = await client.fetch_query(["posts"], fetch, stale_time=10)
            await client.close()
            return first, second, third

        assert asyncio.run(scenario()) == ("v1", "v1", "v2")
        assert fetch.count == 2

    def test_concurrent_callers_share_one_fetch(self, recorder) -> None:
        fetch = recorder("shared", delay=0.01)

        async def scenario():
            async with QueryClient() as client:
                return await asyncio.gather(
                    client.fetch_query(["posts"], fetch), client.fetch_query(["posts"], fetch)
                )

        assert asyncio.run(scenario()) == ["shared", "shared"]
        assert fetch.count == 1

    def test_client_defaults_apply(self, recorder) -> None:
        fetch = recorder(RuntimeError("down"))
        config = ClientConfig(queries=QueryOptions(retry=1, retry_delay=0))

        async def scenario():
            async with QueryClient(config) as client:
                with pytest.raises(RuntimeError):
                    await client.fetch_query(["posts"], fetch)

        asyncio.run(scenario())
        assert fetch.count == 2

    def test_invalid_options_raise_configuration_error(self, recorder) -> None:
        client = QueryClient()
        with pytest.raises(ConfigurationError, match="Invalid query options"):
            client.build_query(["posts"], recorder(), stale_time=-1)

    def test_missing_fetch_fn(self) -> None:
        async def scenario():
            async with QueryClient() as client:
                await client.fetch_query(["posts"])

        with pytest.raises(ConfigurationError):
            asyncio.run(scenario())

    def test_prefetch_records_error_without_raising(self, recorder) -> None:
        fetch = recorder(RuntimeError("down"))

        async def scenario():
            async with QueryClient() as client:
                await client.prefetch_query(["posts"], fetch, retry=0)
                return client.get_entry(["posts"])

        entry = asyncio.run(scenario())
        assert entry.status == QueryStatus.ERROR

    def test_ensure_query_data_accepts_stale(self, clock, recorder) -> None:
        fetch = recorder("v1", "v2")

        async def scenario():
            async with QueryClient(clock=clock) as client:
                await client.fetch_query(["posts"], fetch)
                clock.advance(100)
                return await client.ensure_query_data(["posts"], fetch)

        assert asyncio.run(scenario()) == "v1"
        assert fetch.count == 1


class TestQueryData:
    def test_set_and_get(self, clock) -> None:
        client = QueryClient(clock=clock)
        client.set_query_data(["user", 1], {"id": 1, "name": "A"})
        assert client.get_query_data(["user", 1]) == {"id": 1, "name": "A"}
        assert client.get_entry(["user", 1]).data_updated_at == clock.now

    def test_updater_function(self) -> None:
        client = QueryClient()
        client.set_query_data(["count"], 1)
        client.set_query_data(["count"], lambda n: n + 1)
        assert client.get_query_data(["count"]) == 2

    def test_key_order_independent(self) -> None:
        client = QueryClient()
        client.set_query_data(["todos", {"page": 1, "done": True}], ["x"])
        assert client.get_query_data(["todos", {"done": True, "page": 1}]) == ["x"]

    def test_missing_entry(self) -> None:
        client = QueryClient()
        assert client.get_query_data(["nothing"]) is None
        assert client.get_entry(["nothing"]) is None

    def test_get_entry_is_a_copy(self) -> None:
        client = QueryClient()
        client.set_query_data(["posts"], [1])
        snapshot = client.get_entry(["posts"])
        snapshot.status = QueryStatus.ERROR
        assert client.get_entry(["posts"]).status == QueryStatus.SUCCESS


class TestInvalidation:
    def test_observed_entries_refetch_unobserved_stay_stale(self, clock, recorder) -> None:
        observed_fetch = recorder("fresh")
        idle_fetch = recorder("idle")

        async def scenario():
            async with QueryClient(clock=clock) as client:
                observer = client.subscribe(["posts", 1], observed_fetch, stale_time=60)
                await observer.wait()
                await client.fetch_query(["posts", 2], idle_fetch, stale_time=60)
                count = await client.invalidate_queries(["posts"])
                return count, client.get_entry(["posts", 2])

        count, idle = asyncio.run(scenario())
        assert count == 2
        assert observed_fetch.count == 2
        assert idle_fetch.count == 1
        assert idle.is_invalidated
        assert idle.data == "idle"

    def test_invalidated_entry_refetched_on_next_fetch(self, recorder) -> None:
        fetch = recorder("v1", "v2")

        async def scenario():
            async with QueryClient() as client:
                await client.fetch_query(["posts"], fetch, stale_time=60)
                await client.invalidate_queries(["posts"])
                return await client.fetch_query(["posts"], fetch, stale_time=60)

        assert asyncio.run(scenario()) == "v2"

    def test_throw_on_error(self, recorder) -> None:
        fetch = recorder("ok", RuntimeError("refetch failed"))

        async def scenario():
            async with QueryClient() as client:
                client.subscribe(["posts"], fetch, retry=0)
                await client.coordinator.wait_idle(client.get_entry(["posts"]).key)
                with pytest.raises(RuntimeError, match="refetch failed"):
                    await client.invalidate_queries(["posts"], throw_on_error=True)

        asyncio.run(scenario())

    def test_refetch_queries_forces_fetch(self, recorder) -> None:
        fetch = recorder("v1", "v2")

        async def scenario():
            async with QueryClient() as client:
                await client.fetch_query(["posts"], fetch, stale_time=60)
                started = await client.refetch_queries(["posts"])
                return started, client.get_query_data(["posts"])

        assert asyncio.run(scenario()) == (1, "v2")


class TestBulkOperations:
    def test_remove_queries(self) -> None:
        client = QueryClient()
        client.set_query_data(["posts", 1], "a")
        client.set_query_data(["posts", 2], "b")
        client.set_query_data(["users"], "c")
        assert client.remove_queries(["posts"]) == 2
        assert client.get_entry(["posts", 1]) is None
        assert client.get_query_data(["users"]) == "c"

    def test_cancel_queries(self) -> None:
        async def forever(query_key, context):
            await asyncio.sleep(10)

        async def scenario():
            async with QueryClient() as client:
                task = asyncio.create_task(client.fetch_query(["slow"], forever))
                await asyncio.sleep(0.01)
                assert client.is_fetching() == 1
                assert client.cancel_queries(["slow"]) == 1
                with pytest.raises(CancellationError):
                    await task
                return client.get_entry(["slow"]).fetch_status

        assert asyncio.run(scenario()) == FetchStatus.IDLE

    def test_reset_queries_restores_initial_data(self, recorder) -> None:
        fetch = recorder("fetched")

        async def scenario():
            async with QueryClient() as client:
                await client.fetch_query(["posts"], fetch, initial_data="seed", stale_time=0)
                before = client.get_query_data(["posts"])
                await client.reset_queries(["posts"])
                return before, client.get_query_data(["posts"])

        assert asyncio.run(scenario()) == ("fetched", "seed")

    def test_is_fetching_filters(self) -> None:
        client = QueryClient()
        client.set_query_data(["posts"], 1)
        assert client.is_fetching() == 0
        assert client.is_fetching(QueryFilters(type=QueryType.ACTIVE)) == 0

    def test_clear(self) -> None:
        client = QueryClient()
        client.set_query_data(["a"], 1)
        client.clear()
        assert len(client.store) == 0


class TestInfinite:
    def test_fetch_infinite_query_then_pages(self, backend) -> None:
        config = ApiConfig(base_url="https://api.test", users_url="https://api.test/users")

        async def scenario():
            async with PostsApi(config, transport=backend.transport()) as api:
                async with QueryClient() as client:
                    await client.fetch_infinite_query(
                        ["users"],
                        api.fetch_users,
                        initial_page_param=1,
                        get_next_page_param=lambda last, pages: len(pages) + 1
                        if len(last) == 10
                        else None,
                    )
                    await client.fetch_next_page(["users"])
                    return client.get_query_data(["users"]), client.has_next_page(["users"])

        data, more = asyncio.run(scenario())
        assert [len(page) for page in data.pages] == [10, 10]
        assert more is True

    def test_rejects_plain_options(self, recorder) -> None:
        async def scenario():
            async with QueryClient() as client:
                await client.fetch_infinite_query(["users"], recorder(), QueryOptions())

        with pytest.raises(ConfigurationError):
            asyncio.run(scenario())

    def test_infinite_options_kept_on_rebuild(self, recorder) -> None:
        client = QueryClient()
        client.build_query(["users"], recorder([]), InfiniteQueryOptions(initial_page_param=1))
        entry = client.build_query(["users"])
        assert entry.is_infinite


class TestFocusAndConnectivity:
    def test_focus_refetches_stale_observed_entries(self, clock, recorder) -> None:
        fetch = recorder("v1", "v2")

        async def scenario():
            async with QueryClient(clock=clock) as client:
                observer = client.subscribe(["posts"], fetch, stale_time=10)
                await observer.wait()
                client.set_focused(False)
                assert client.set_focused(True) == 0
                clock.advance(11)
                client.set_focused(False)
                started = client.set_focused(True)
                result = await observer.wait()
                return started, result.data

        assert asyncio.run(scenario()) == (1, "v2")

    def test_focus_trigger_disabled(self, clock, recorder) -> None:
        fetch = recorder("v1")

        async def scenario():
            async with QueryClient(clock=clock) as client:
                observer = client.subscribe(["posts"], fetch, refetch_on_window_focus=False)
                await observer.wait()
                client.set_focused(False)
                return client.set_focused(True)

        assert asyncio.run(scenario()) == 0

    def test_reconnect_resumes_and_refetches(self, clock, recorder) -> None:
        fetch = recorder("data")

        async def scenario():
            async with QueryClient(clock=clock) as client:
                client.set_online(False)
                observer = client.subscribe(["posts"], fetch)
                await asyncio.sleep(0.01)
                paused = observer.result().is_paused
                client.set_online(True)
                result = await observer.wait()
                return paused, result.data, client.is_online

        assert asyncio.run(scenario()) == (True, "data", True)
        assert fetch.count == 1


class TestClose:
    def test_close_unsubscribes_and_clears(self, recorder) -> None:
        async def scenario():
            client = QueryClient()
            observer = client.subscribe(["posts"], recorder("x"))
            await observer.wait()
            await client.close()
            return observer.is_subscribed, len(client.store)

        assert asyncio.run(scenario()) == (False, 0)
