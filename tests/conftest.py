"""Shared test fixtures for querycache.

Provides a controllable clock, isolated config environments, output state
management, a CLI runner and a stub HTTP backend for the demo API. These
fixtures are automatically discovered by pytest and available to all test
modules without explicit imports.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from querycache.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale.
    Resetting forces a fresh manager to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points XDG_CONFIG_HOME at tmp_path, clears every QUERYCACHE_* variable
    and changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    from querycache.config import ENV_VARS

    monkeypatch.setattr("querycache.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def verbose_output() -> OutputManager:
    """Install a PLAIN-format, verbose, colourless OutputManager."""
    output = OutputManager(format=OutputFormat.PLAIN, no_color=True, verbose=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# Demo API backend
# ---------------------------------------------------------------------------


POSTS = [
    {"userId": 1, "id": n, "title": f"title {n}", "body": f"body {n}"}
    for n in range(1, 13)
]

USERS = [{"id": n, "login": f"user{n}"} for n in range(1, 26)]


class FakeBackend:
    """In-memory stand-in for the posts and users APIs.

    Records every request in :attr:`calls` and can be told to fail the
    next requests with :meth:`fail_next`.
    """

    def __init__(self) -> None:
        self.posts = {post["id"]: dict(post) for post in POSTS}
        self.users = list(USERS)
        self.calls: list[httpx.Request] = []
        self._failures: list[int] = []

    def fail_next(self, status: int, times: int = 1) -> None:
        self._failures.extend([status] * times)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self._failures:
            status = self._failures.pop(0)
            return httpx.Response(status, json={"message": "stub failure"})

        path = request.url.path
        params = request.url.params
        if path == "/posts":
            start = int(params.get("_start", 0))
            limit = int(params.get("_limit", 10))
            ordered = [self.posts[key] for key in sorted(self.posts)]
            return httpx.Response(200, json=ordered[start:start + limit])
        if path.startswith("/posts/"):
            post_id = int(path.rsplit("/", 1)[1])
            if post_id not in self.posts:
                return httpx.Response(404, json={})
            if request.method == "PATCH":
                self.posts[post_id].update(json.loads(request.content))
            if request.method == "DELETE":
                del self.posts[post_id]
                return httpx.Response(200, json={})
            return httpx.Response(200, json=self.posts[post_id])
        if path == "/users":
            page = int(params.get("page", 1))
            per_page = int(params.get("per_page", 10))
            chunk = self.users[(page - 1) * per_page: page * per_page]
            return httpx.Response(200, json=chunk)
        return httpx.Response(404, json={"message": f"no route for {path}"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def stub_api(backend: FakeBackend, monkeypatch: pytest.MonkeyPatch) -> FakeBackend:
    """Route the CLI's PostsApi to the in-memory backend."""
    transport = backend.transport()
    monkeypatch.setattr("querycache.commands.api_transport", lambda: transport)
    return backend


# ---------------------------------------------------------------------------
# Fetch function helpers
# ---------------------------------------------------------------------------


class Recorder:
    """Async fetch function returning (or raising) scripted results.

    Each call pops the next outcome; once they run out the last one is
    repeated. Outcomes that are exceptions are raised.
    """

    def __init__(self, *outcomes: Any, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes) or [None]
        self.delay = delay
        self.calls: list[tuple[Any, Any]] = []

    @property
    def count(self) -> int:
        return len(self.calls)

    async def __call__(self, query_key: Any, context: Any) -> Any:
        self.calls.append((query_key, context))
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(query_key, context)
        return outcome


@pytest.fixture
def recorder() -> Callable[..., Recorder]:
    return Recorder


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
