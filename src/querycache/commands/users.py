"""Users command -- infinite paging through a user listing.

The ``["users"]`` entry is an infinite query: each page holds
``users_page_size`` users and the next page exists while the last one
came back full.
"""

from __future__ import annotations

from typing import Any

import typer

from querycache.client import QueryClient
from querycache.commands import load_config, open_api, run
from querycache.devtools import render_cache
from querycache.models import ClientConfig
from querycache.output import info, print_table

USERS_KEY = ["users"]


def users_command(
    ctx: typer.Context,
    pages: int = typer.Option(2, "--pages", min=1, help="Number of pages to load."),
    devtools: bool = typer.Option(False, "--devtools", help="Print the cache table afterwards."),
) -> None:
    """Scroll through users, loading one page at a time."""
    config = load_config(ctx)
    run(_scroll_users(config, pages, devtools))


async def _scroll_users(config: ClientConfig, pages: int, devtools: bool) -> None:
    size = config.api.users_page_size

    def next_page(last_page: list[Any], all_pages: list[Any]) -> Any:
        return len(all_pages) + 1 if len(last_page) == size else None

    async with open_api(config) as api, QueryClient(config) as client:
        data = await client.fetch_infinite_query(
            USERS_KEY,
            api.fetch_users,
            initial_page_param=1,
            get_next_page_param=next_page,
        )
        while len(data.pages) < pages and client.has_next_page(USERS_KEY):
            data = await client.fetch_next_page(USERS_KEY)

        rows = [
            [str(user.get("id", "")), str(user.get("login", ""))]
            for page in data.pages
            for user in page
        ]
        print_table(["ID", "Login"], rows, title="Users")
        info(f"Loaded {len(data.pages)} page(s)")
        if not client.has_next_page(USERS_KEY):
            info("No more users")
        if devtools:
            render_cache(client)
