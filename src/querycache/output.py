"""Console output for querycache: cache data on stdout, engine trace on stderr.

The engine never prints directly. Components call the module helpers
:func:`debug` (fetch starts, joins, retry scheduling, supersession,
discarded results, garbage collection) and :func:`warning` (observer
failures), which forward to the installed :class:`OutputManager`. The
default manager is not verbose, so library users only see warnings until
they install one with ``verbose=True``.

The CLI builds its manager from the global flags in
:func:`~querycache.app.main_callback`. Data it renders (posts, user pages,
the cache inspector table) goes to stdout as Rich output on a terminal,
tab-separated lines when piped, or JSON with ``--json``.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table


class OutputFormat(str, Enum):
    """How data written to stdout is rendered. ``AUTO`` picks ``RICH`` on a colour TTY."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


@dataclass(frozen=True)
class _Level:
    prefix: str
    style: str
    quiet_hides: bool = False
    verbose_only: bool = False


_LEVELS = {
    "debug": _Level("[debug] ", "dim", verbose_only=True),
    "info": _Level("", "", quiet_hides=True),
    "success": _Level("", "green", quiet_hides=True),
    "warning": _Level("Warning: ", "yellow"),
    "error": _Level("Error: ", "bold red"),
}


class OutputManager:
    """Holds the output preferences of one CLI run (or one embedding application).

    Args:
        format: Rendering of stdout data.
        no_color: Strip colour from both streams.
        quiet: Hide info and success lines. Warnings, errors and data still print.
        verbose: Show the engine's debug trace.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        self._format = _resolve_format(format, self._no_color)
        self._stdout = _console(sys.stdout, self._no_color, force=self._format == OutputFormat.RICH)
        self._stderr = _console(sys.stderr, self._no_color)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        return self._verbose

    # ------------------------------------------------------------------ #
    # stdout
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        print(text, file=sys.stdout, flush=True)

    def format_response(self, data: Any) -> None:
        """Render a query result (a record, a page of records, or a scalar)."""
        if self._format == OutputFormat.PLAIN:
            for line in _plain_lines(data):
                self.print_data(line)
            return
        text = _to_json(data)
        if self._format == OutputFormat.JSON:
            self.print_data(text)
        else:
            self._stdout.print(Syntax(text, "json", theme="monokai", word_wrap=True))

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Render rows as a Rich table, tab-separated lines, or a JSON list of records.

        *title* only shows in Rich mode.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(_to_json([dict(zip(headers, row)) for row in rows]))
        elif self._format == OutputFormat.PLAIN:
            for row in [headers, *rows]:
                self.print_data("\t".join(row))
        else:
            table = Table(*headers, title=title, header_style="bold cyan")
            for row in rows:
                table.add_row(*map(escape, row))
            self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # stderr
    # ------------------------------------------------------------------ #

    def log(self, level: str, message: str) -> None:
        """Write *message* to stderr at *level* unless quiet/verbose settings hide it."""
        spec = _LEVELS[level]
        if spec.verbose_only and not self._verbose:
            return
        if spec.quiet_hides and self._quiet:
            return
        if self._no_color:
            print(f"{spec.prefix}{message}", file=sys.stderr, flush=True)
            return
        line = escape(f"{spec.prefix}{message}")
        self._stderr.print(f"[{spec.style}]{line}[/{spec.style}]" if spec.style else line)

    def debug(self, message: str) -> None:
        self.log("debug", message)

    def info(self, message: str) -> None:
        self.log("info", message)

    def success(self, message: str) -> None:
        self.log("success", message)

    def warning(self, message: str) -> None:
        self.log("warning", message)

    def error(self, message: str) -> None:
        self.log("error", message)


def _console(file: Any, no_color: bool, force: bool = False) -> Console:
    return Console(
        file=file,
        no_color=no_color,
        force_terminal=force or None,
        stderr=file is sys.stderr,
        highlight=False,
    )


def _resolve_format(requested: OutputFormat, no_color: bool) -> OutputFormat:
    if requested != OutputFormat.AUTO:
        return requested
    return OutputFormat.RICH if _is_tty() and not no_color else OutputFormat.PLAIN


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _plain_lines(data: Any) -> Iterator[str]:
    """Records become one tab-separated line each; a single record is key/value lines."""
    if isinstance(data, dict):
        for key, value in data.items():
            yield f"{key}\t{value}"
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                yield "\t".join(str(value) for value in item.values())
            else:
                yield str(item)
    else:
        yield str(data)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """``NO_COLOR`` with any value, or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Installed manager and module helpers
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    global _output
    _output = None


def format_response(data: Any) -> None:
    get_output().format_response(data)


def print_table(headers: list[str], rows: list[list[str]], title: Optional[str] = None) -> None:
    get_output().print_table(headers, rows, title)


def debug(message: str) -> None:
    get_output().debug(message)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def error(message: str) -> None:
    get_output().error(message)
