"""Built-in CLI sub-commands for querycache.

* :mod:`~querycache.commands.posts` -- ``posts``, ``post``, ``edit`` and ``delete``.
* :mod:`~querycache.commands.users` -- ``users`` (infinite paging).
* :mod:`~querycache.commands.config` -- ``config show`` / ``config path``.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``config``) or a plain callback function
registered directly on the root app.

The helpers below are shared by the commands: :func:`load_config` resolves
the configuration with the root callback's overrides, :func:`open_api`
builds the HTTP adapter, and :func:`run` drives a coroutine and turns
:class:`~querycache.exceptions.QueryCacheError` into a clean exit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Optional

import httpx
import typer

from querycache.api import PostsApi
from querycache.config import resolve_config
from querycache.exceptions import QueryCacheError
from querycache.models import ClientConfig
from querycache.output import error


@dataclass
class CliState:
    """What the root callback hands to sub-commands through ``ctx.obj``."""

    overrides: dict[str, Any] = field(default_factory=dict)
    verbose: bool = False


def api_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for :class:`PostsApi`; ``None`` uses the network. Tests replace this."""
    return None


def load_config(ctx: typer.Context) -> ClientConfig:
    state = ctx.find_object(CliState) if ctx is not None else None
    overrides = state.overrides if state is not None else None
    try:
        return resolve_config(overrides)
    except QueryCacheError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def open_api(config: ClientConfig) -> PostsApi:
    return PostsApi(config.api, transport=api_transport())


def run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run *coro* to completion, exiting with the error's code on failure."""
    try:
        return asyncio.run(coro)
    except QueryCacheError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
