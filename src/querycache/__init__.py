"""querycache -- an asynchronous query cache for server state.

The engine keeps the results of caller-supplied fetch functions under
structured keys and manages their lifecycle: staleness, background
revalidation, retry with backoff, deduplication of concurrent fetches,
cursor-based paging and mutations with optimistic updates.

Typical use::

    from querycache.client import QueryClient

    async with QueryClient() as client:
        posts = await client.fetch_query(["posts", 0], fetch_posts, stale_time=30)
        await client.invalidate_queries(["posts"])

Modules:
    client: The :class:`~querycache.client.QueryClient` facade.
    keys: Canonical query keys and prefix matching.
    store: Entry store with staleness and garbage collection.
    coordinator: Fetch deduplication, retry, supersession and cancellation.
    bus: Per-key change notifications.
    infinite: Forward and backward page fetching.
    mutation: Write operations with ordered hooks.
    observer: Read-time projection of an entry for consumers.
    models: Pydantic models shared across the package.
    app: Typer CLI demo against a public REST API.
"""

__version__ = "0.1.0"
