"""Command-line front end: a demo of the cache engine against a posts/users REST API.

Commands build a :class:`~querycache.client.QueryClient` from the resolved
configuration, plug in fetch functions from :class:`~querycache.api.PostsApi`,
and print whatever the cache hands back:

* ``posts`` pages through posts, showing the previous page as placeholder
  while the next one loads.
* ``post ID`` shows one post; ``edit ID --title ...`` patches it
  optimistically and rolls the cached copy back if the write fails;
  ``delete ID`` removes it and its cache entry.
* ``users --pages N`` scrolls an infinite query.
* ``config show`` / ``config path`` inspect configuration.

``querycache`` (see ``pyproject.toml``) runs :func:`main`, which maps any
:class:`~querycache.exceptions.QueryCacheError` that escapes a command to
its ``exit_code``.
"""

from __future__ import annotations

import signal
import sys
from typing import Any, NoReturn, Optional

import typer

from querycache import __version__
from querycache.commands import CliState
from querycache.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE
from querycache.output import OutputFormat, OutputManager, error, set_output

app = typer.Typer(
    name="querycache",
    help="Query cache demo: fetch, page and edit posts through a caching engine.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _show_version(value: bool) -> None:
    if value:
        typer.echo(f"querycache {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", callback=_show_version, is_eager=True, help="Show version and exit."
    ),
    base_url: Optional[str] = typer.Option(
        None, "--base-url", help="Posts API root, overriding configuration."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print data as JSON."),
    plain_output: bool = typer.Option(False, "--plain", help="Print data as tab-separated text."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colour."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print data, warnings and errors."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Trace cache activity (fetches, retries, gc) on stderr."
    ),
) -> None:
    """Install the output manager and collect configuration overrides."""
    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))

    state = CliState(verbose=verbose)
    if base_url is not None:
        state.overrides["api"] = {"base_url": base_url}
    ctx.obj = state


def _register_commands() -> None:
    from querycache.commands.config import config_app
    from querycache.commands.posts import (
        delete_command,
        edit_command,
        post_command,
        posts_command,
    )
    from querycache.commands.users import users_command

    for name, command in (
        ("posts", posts_command),
        ("post", post_command),
        ("edit", edit_command),
        ("delete", delete_command),
        ("users", users_command),
    ):
        app.command(name)(command)
    app.add_typer(config_app, name="config", help="Inspect configuration.")


_register_commands()


def _cancelled(*_: Any) -> NoReturn:
    sys.stderr.write("\nCancelled.\n")
    sys.exit(EXIT_CANCELLED)


def main() -> None:
    """Console-script entry point."""
    from querycache.exceptions import QueryCacheError

    signal.signal(signal.SIGINT, _cancelled)
    try:
        app()
    except KeyboardInterrupt:
        _cancelled()
    except QueryCacheError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
    except Exception as exc:
        error(f"Unexpected error: {exc!r}")
        sys.exit(EXIT_GENERIC_FAILURE)
