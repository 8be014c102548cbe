"""Demo REST adapter -- the fetch functions the CLI injects into the engine.

:class:`PostsApi` wraps :class:`httpx.AsyncClient` and talks to two public
APIs:

* a JSONPlaceholder-style posts service (``GET /posts?_start=N&_limit=M``,
  ``GET /posts/{id}``, ``PATCH /posts/{id}``, ``DELETE /posts/{id}``);
* a GitHub-style user listing (``GET /users?per_page=M&page=N``) used for
  infinite scrolling.

HTTP failures are mapped to the engine's error taxonomy so the retry
policy can classify them: 4xx responses raise
:class:`~querycache.exceptions.ClientRequestError` (never retried), 5xx
responses raise :class:`~querycache.exceptions.ServerError`, and network
or timeout errors raise :class:`~querycache.exceptions.ConnectionError_`.
The adapter does not retry by itself; that is the engine's job.

The ``fetch_*`` methods have the engine's fetch-function signature
``(query_key, context)`` and can be handed to
:class:`~querycache.client.QueryClient` directly::

    async with PostsApi(config.api) as api:
        posts = await client.fetch_query(["posts", 0], api.fetch_posts)
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from querycache.coordinator import FetchContext
from querycache.exceptions import ClientRequestError, ConnectionError_, ServerError
from querycache.models import ApiConfig
from querycache.output import debug


class PostsApi:
    """Asynchronous client for the demo posts and users endpoints.

    Must be used as an async context manager.

    Args:
        config: Endpoints, timeout and page sizes.
        transport: Optional ``httpx`` transport; tests pass an
            :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config or ApiConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def config(self) -> ApiConfig:
        return self._config

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> PostsApi:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    async def get_posts(self, start: int = 0, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Fetch ``limit`` posts starting at offset *start*."""
        limit = limit if limit is not None else self._config.page_size
        response = await self.request("GET", "/posts", params={"_start": start, "_limit": limit})
        return response.json()

    async def get_post(self, post_id: int) -> dict[str, Any]:
        response = await self.request("GET", f"/posts/{post_id}")
        return response.json()

    async def update_post(self, post_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        response = await self.request("PATCH", f"/posts/{post_id}", json_body=fields)
        return response.json()

    async def delete_post(self, post_id: int) -> None:
        await self.request("DELETE", f"/posts/{post_id}")

    async def get_users(self, page: int = 1, per_page: Optional[int] = None) -> list[dict[str, Any]]:
        """Fetch one page (1-based) of users."""
        per_page = per_page if per_page is not None else self._config.users_page_size
        response = await self.request(
            "GET", self._config.users_url, params={"per_page": per_page, "page": page}
        )
        return response.json()

    # ------------------------------------------------------------------ #
    # Fetch functions
    # ------------------------------------------------------------------ #

    async def fetch_posts(self, query_key: Any, context: FetchContext) -> list[dict[str, Any]]:
        """Fetch function for ``["posts", start]``."""
        return await self.get_posts(start=int(query_key[1]))

    async def fetch_post(self, query_key: Any, context: FetchContext) -> dict[str, Any]:
        """Fetch function for ``["post", id]``."""
        return await self.get_post(int(query_key[1]))

    async def fetch_users(self, query_key: Any, context: FetchContext) -> list[dict[str, Any]]:
        """Page function for ``["users"]``; the page number comes from ``context.page_param``."""
        return await self.get_users(page=context.page_param or 1)

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> httpx.Response:
        """Send one request and map failures to querycache exceptions.

        Raises:
            ClientRequestError: On 4xx.
            ServerError: On 5xx.
            ConnectionError_: On network and timeout errors.
        """
        assert self._client is not None, "Client not initialised -- use as async context manager"
        kwargs: dict[str, Any] = {"params": params}
        if json_body is not None:
            kwargs["json"] = json_body
        debug(f"{method} {path} {params or ''}".rstrip())
        try:
            response = await self._client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ConnectionError_(f"Connection failed: {exc}") from exc
        _map_response_error(response)
        return response


def _map_response_error(response: httpx.Response) -> None:
    """Raise a typed exception for error HTTP status codes."""
    status = response.status_code
    if status < 400:
        return

    try:
        detail = response.json()
        if isinstance(detail, dict):
            msg = detail.get("message") or detail.get("error") or detail.get("detail") or ""
        else:
            msg = str(detail)
    except ValueError:
        msg = response.text[:200] if response.text else ""

    prefix = f"HTTP {status}"
    full_msg = f"{prefix}: {msg}" if msg else prefix

    if status >= 500:
        raise ServerError(full_msg, status_code=status)
    raise ClientRequestError(full_msg, status_code=status)
