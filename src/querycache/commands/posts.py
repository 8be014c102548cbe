"""Post commands -- paginated listing, detail view and optimistic edit.

``posts`` walks pages of posts through a single
:class:`~querycache.observer.QueryObserver` whose key changes per page,
with ``placeholder_data=keep_previous_data`` so the previous page stays
visible while the next one loads. ``post`` reads one post through the
cache. ``edit`` runs a mutation that patches the cached post before the
write and restores it if the write fails. ``delete`` removes the post and
its cache entry once the server confirms.
"""

from __future__ import annotations

from typing import Any, Optional

import typer

from querycache.client import QueryClient
from querycache.commands import load_config, open_api, run
from querycache.devtools import render_cache
from querycache.models import ClientConfig
from querycache.observer import keep_previous_data
from querycache.output import format_response, info, success, warning


def posts_command(
    ctx: typer.Context,
    page: int = typer.Option(1, "--page", min=1, help="First page to show."),
    pages: int = typer.Option(1, "--pages", min=1, help="Number of pages to walk through."),
    devtools: bool = typer.Option(False, "--devtools", help="Print the cache table afterwards."),
) -> None:
    """List posts page by page.

    Example::

        querycache posts --page 2 --pages 3
    """
    config = load_config(ctx)
    run(_show_posts(config, page, pages, devtools))


async def _show_posts(config: ClientConfig, page: int, pages: int, devtools: bool) -> None:
    size = config.api.page_size
    async with open_api(config) as api, QueryClient(config) as client:
        observer = client.watch(
            ["posts", (page - 1) * size],
            api.fetch_posts,
            placeholder_data=keep_previous_data,
        )
        with observer:
            for index in range(pages):
                number = page + index
                if index:
                    observer.set_query_key(["posts", (number - 1) * size])
                    if observer.result().is_placeholder_data:
                        info(f"Showing page {number - 1} while page {number} loads")
                result = await observer.wait()
                if result.is_error:
                    raise result.error
                info(f"Page {number}")
                format_response(result.data)
            if devtools:
                render_cache(client)


def post_command(
    ctx: typer.Context,
    post_id: int = typer.Argument(help="Post ID."),
    devtools: bool = typer.Option(False, "--devtools", help="Print the cache table afterwards."),
) -> None:
    """Show one post."""
    config = load_config(ctx)
    run(_show_post(config, post_id, devtools))


async def _show_post(config: ClientConfig, post_id: int, devtools: bool) -> None:
    async with open_api(config) as api, QueryClient(config) as client:
        data = await client.fetch_query(["post", post_id], api.fetch_post)
        format_response(data)
        if devtools:
            render_cache(client)


def edit_command(
    ctx: typer.Context,
    post_id: int = typer.Argument(help="Post ID."),
    title: str = typer.Option(..., "--title", help="New title."),
    body: Optional[str] = typer.Option(None, "--body", help="New body."),
    devtools: bool = typer.Option(False, "--devtools", help="Print the cache table afterwards."),
) -> None:
    """Update a post, patching the cached copy optimistically.

    Example::

        querycache edit 1 --title "New title"
    """
    fields: dict[str, Any] = {"title": title}
    if body is not None:
        fields["body"] = body
    config = load_config(ctx)
    run(_edit_post(config, post_id, fields, devtools))


async def _edit_post(
    config: ClientConfig,
    post_id: int,
    fields: dict[str, Any],
    devtools: bool,
) -> None:
    key = ["post", post_id]
    async with open_api(config) as api, QueryClient(config) as client:
        await client.fetch_query(key, api.fetch_post)

        def on_mutate(patch: dict[str, Any]) -> Any:
            previous = client.get_query_data(key)
            client.set_query_data(key, lambda post: {**(post or {}), **patch})
            return previous

        def on_error(exc: BaseException, patch: dict[str, Any], previous: Any) -> None:
            if previous is not None:
                client.set_query_data(key, previous)
            warning(f"Update of post {post_id} failed; cached copy restored")

        async def on_settled(data: Any, exc: Any, patch: dict[str, Any], previous: Any) -> None:
            await client.invalidate_queries(key)

        mutation = client.mutation(
            lambda patch: api.update_post(post_id, patch),
            on_mutate=on_mutate,
            on_error=on_error,
            on_settled=on_settled,
        )
        outcome = await mutation.execute(fields)
        if not outcome.ok:
            raise outcome.error
        success(f"Updated post {post_id}")
        format_response(client.get_query_data(key))
        if devtools:
            render_cache(client)


def delete_command(
    ctx: typer.Context,
    post_id: int = typer.Argument(help="Post ID."),
    devtools: bool = typer.Option(False, "--devtools", help="Print the cache table afterwards."),
) -> None:
    """Delete a post and drop its cached copy."""
    config = load_config(ctx)
    run(_delete_post(config, post_id, devtools))


async def _delete_post(config: ClientConfig, post_id: int, devtools: bool) -> None:
    key = ["post", post_id]
    async with open_api(config) as api, QueryClient(config) as client:
        await client.fetch_query(key, api.fetch_post)
        mutation = client.mutation(
            lambda _: api.delete_post(post_id),
            on_success=lambda data, variables, context: client.remove_queries(key),
        )
        await mutation.mutate(post_id)
        success(f"Deleted post {post_id}")
        if devtools:
            render_cache(client)
