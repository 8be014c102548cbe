"""Cache inspector: a table of every entry in a client's store.

Used by the CLI's ``--devtools`` flag to show what the cache holds after a
command ran: key, status, fetch status, observer count, freshness, age of
the data and retry count.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from querycache.models import CacheEntry, InfiniteData
from querycache.output import print_table

if TYPE_CHECKING:
    from querycache.client import QueryClient

HEADERS = ["Key", "Status", "Fetch", "Observers", "Freshness", "Updated", "Retries", "Size"]


def _freshness(entry: CacheEntry, now: float) -> str:
    if entry.observer_count == 0:
        return "inactive"
    return "stale" if entry.is_stale(now) else "fresh"


def _age(entry: CacheEntry, now: float) -> str:
    if not entry.has_data:
        return "-"
    return f"{max(0.0, now - entry.data_updated_at):.1f}s ago"


def _size(entry: CacheEntry) -> str:
    if not entry.has_data:
        return "-"
    if isinstance(entry.data, InfiniteData):
        return f"{len(entry.data.pages)} page(s)"
    if isinstance(entry.data, (list, tuple, dict)):
        return str(len(entry.data))
    return "1"


def cache_rows(client: QueryClient) -> list[list[str]]:
    """One row of strings per entry, in creation order."""
    now = client.store.now()
    return [
        [
            entry.key.text,
            entry.status.value,
            entry.fetch_status.value,
            str(entry.observer_count),
            _freshness(entry, now),
            _age(entry, now),
            str(entry.retry_count),
            _size(entry),
        ]
        for entry in client.store.entries()
    ]


def render_cache(client: QueryClient) -> None:
    """Print the cache table to stdout in the active output format."""
    print_table(HEADERS, cache_rows(client), title="Query cache")
