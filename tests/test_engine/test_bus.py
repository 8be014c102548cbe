"""Tests for querycache.bus -- per-key delivery and ordering."""

from __future__ import annotations

from querycache.bus import CacheEvent, SubscriptionBus
from querycache.keys import canonicalize
from querycache.models import CacheEntry, CacheEventType

KEY = canonicalize(["posts", 1])
OTHER = canonicalize(["posts", 2])


def _entry(data: object = None, key=KEY) -> CacheEntry:
    return CacheEntry(key=key, data=data)


class TestSubscribe:
    def test_each_observer_receives_every_publish(self) -> None:
        bus = SubscriptionBus()
        first: list[CacheEvent] = []
        second: list[CacheEvent] = []
        bus.subscribe(KEY, first.append)
        bus.subscribe(KEY, second.append)

        bus.publish(KEY, _entry("a"))
        bus.publish(KEY, _entry("b"))

        assert [event.entry.data for event in first] == ["a", "b"]
        assert [event.entry.data for event in second] == ["a", "b"]
        assert all(event.type == CacheEventType.UPDATED for event in first)

    def test_observers_only_hear_their_key(self) -> None:
        bus = SubscriptionBus()
        events: list[CacheEvent] = []
        bus.subscribe(KEY, events.append)
        bus.publish(OTHER, _entry("x", key=OTHER))
        assert events == []

    def test_handles_are_distinct(self) -> None:
        bus = SubscriptionBus()
        assert bus.subscribe(KEY, lambda e: None) != bus.subscribe(KEY, lambda e: None)
        assert bus.observer_count(KEY) == 2


class TestUnsubscribe:
    def test_no_delivery_after_unsubscribe(self) -> None:
        bus = SubscriptionBus()
        events: list[CacheEvent] = []
        handle = bus.subscribe(KEY, events.append)
        assert bus.unsubscribe(handle) is True
        bus.publish(KEY, _entry("a"))
        assert events == []
        assert bus.observer_count(KEY) == 0

    def test_unsubscribe_twice_is_harmless(self) -> None:
        bus = SubscriptionBus()
        handle = bus.subscribe(KEY, lambda e: None)
        bus.unsubscribe(handle)
        assert bus.unsubscribe(handle) is False

    def test_observer_removed_mid_delivery_is_skipped(self) -> None:
        bus = SubscriptionBus()
        events: list[str] = []
        handles: dict[str, int] = {}

        def first(event: CacheEvent) -> None:
            events.append("first")
            bus.unsubscribe(handles["second"])

        handles["first"] = bus.subscribe(KEY, first)
        handles["second"] = bus.subscribe(KEY, lambda e: events.append("second"))
        bus.publish(KEY, _entry())
        assert events == ["first"]


class TestOrdering:
    def test_publish_from_observer_is_delivered_after_current(self) -> None:
        bus = SubscriptionBus()
        seen: list[tuple[str, object]] = []

        def reentrant(event: CacheEvent) -> None:
            seen.append(("reentrant", event.entry.data))
            if event.entry.data == 1:
                bus.publish(KEY, _entry(2))

        bus.subscribe(KEY, reentrant)
        bus.subscribe(KEY, lambda e: seen.append(("plain", e.entry.data)))
        bus.publish(KEY, _entry(1))

        assert seen == [("reentrant", 1), ("plain", 1), ("reentrant", 2), ("plain", 2)]

    def test_failing_observer_does_not_block_others(self, verbose_output, capsys) -> None:
        bus = SubscriptionBus()
        received: list[CacheEvent] = []

        def broken(event: CacheEvent) -> None:
            raise ValueError("observer bug")

        bus.subscribe(KEY, broken)
        bus.subscribe(KEY, received.append)
        bus.publish(KEY, _entry("a"))

        assert len(received) == 1
        assert "observer bug" in capsys.readouterr().err

    def test_removed_event_type(self) -> None:
        bus = SubscriptionBus()
        events: list[CacheEvent] = []
        bus.subscribe(KEY, events.append)
        bus.publish(KEY, _entry(), CacheEventType.REMOVED)
        assert events[0].type == CacheEventType.REMOVED
        assert events[0].key == KEY
