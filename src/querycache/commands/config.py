"""Config commands -- view the effective configuration.

Provides the ``querycache config`` sub-command group. Settings come from
the user config file, ``./querycache.json``, ``QUERYCACHE_*`` environment
variables and root flags; see :func:`querycache.config.resolve_config`.
"""

from __future__ import annotations

import typer

from querycache.commands import load_config
from querycache.output import format_response, info


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Show the effective configuration.

    Example::

        querycache config show
        querycache --json config show
    """
    config = load_config(ctx)
    format_response(config.model_dump(mode="json"))


@config_app.command("path")
def config_path() -> None:
    """Show where configuration files are looked up."""
    from querycache.config import project_config_path, user_config_path

    info("Configuration files, lowest precedence first:")
    format_response(
        {
            "user": str(user_config_path()),
            "project": str(project_config_path()),
        }
    )
