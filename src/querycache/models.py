"""Canonical models shared across all querycache modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Options** -- what callers configure:
    :class:`QueryOptions`, :class:`InfiniteQueryOptions`,
    :class:`MutationOptions`, :class:`QueryFilters`, :class:`ApiConfig` and
    :class:`ClientConfig`.

**State** -- what the engine stores and hands out as snapshots:
    :class:`CacheEntry`, :class:`InfiniteData`, :class:`QueryResult` and
    :class:`MutationState`.

**Enumerations** -- :class:`QueryStatus`, :class:`FetchStatus`,
    :class:`MutationStatus`, :class:`FetchMode`, :class:`FetchDirection`,
    :class:`CacheEventType` and :class:`QueryType`.

All durations are seconds as floats; ``float("inf")`` means "never".
Options that hold callables use ``arbitrary_types_allowed`` and are not
meant to be serialised. Only :class:`ClientConfig` round-trips through
JSON (see :mod:`querycache.config`).
"""

from __future__ import annotations

import enum
from typing import Any, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from querycache.keys import CanonicalKey


# --- Enumerations ---


class QueryStatus(str, enum.Enum):
    """Whether an entry holds data.

    ``PENDING`` means neither data nor an error has been observed yet.
    """

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FetchStatus(str, enum.Enum):
    """Whether a fetch is running for an entry.

    ``PAUSED`` means a fetch was requested while the client was offline and
    is waiting for :meth:`~querycache.client.QueryClient.set_online`.
    """

    IDLE = "idle"
    FETCHING = "fetching"
    PAUSED = "paused"


class MutationStatus(str, enum.Enum):
    """Lifecycle of a single mutation invocation."""

    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FetchMode(str, enum.Enum):
    """How a new fetch request relates to one already in flight.

    * ``JOIN`` -- share the in-flight fetch's result.
    * ``SUPERSEDE`` -- start a new fetch; the in-flight one becomes
      obsolete and its result is ignored.
    * ``QUEUE`` -- wait for the in-flight fetch to settle, then start.
    """

    JOIN = "join"
    SUPERSEDE = "supersede"
    QUEUE = "queue"


class FetchDirection(str, enum.Enum):
    """Which end of an infinite entry a page fetch extends."""

    FORWARD = "forward"
    BACKWARD = "backward"


class CacheEventType(str, enum.Enum):
    """Kind of change delivered by the subscription bus."""

    UPDATED = "updated"
    REMOVED = "removed"


class QueryType(str, enum.Enum):
    """Filter entries by whether they have observers."""

    ALL = "all"
    ACTIVE = "active"
    INACTIVE = "inactive"


# --- Options ---


RetryValue = Union[int, bool, Callable[[int, BaseException], bool]]
RetryDelayValue = Union[float, Callable[[int, BaseException], float], None]
RefetchTrigger = Union[bool, Literal["always"]]


class QueryOptions(BaseModel):
    """Per-query behaviour. Unset fields fall back to the client defaults.

    Example::

        QueryOptions(stale_time=10, retry=1, select=lambda posts: posts[:3])
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stale_time: float = Field(
        default=0.0, ge=0, description="Seconds after a success during which data is fresh"
    )
    gc_time: float = Field(
        default=300.0, ge=0, description="Seconds an unobserved entry is kept"
    )
    retry: RetryValue = Field(
        default=3, description="Retry count, True/False, or predicate(failure_count, error)"
    )
    retry_delay: RetryDelayValue = Field(
        default=None, description="Seconds, or fn(attempt_index, error); None = backoff"
    )
    refetch_on_mount: RefetchTrigger = True
    refetch_on_window_focus: RefetchTrigger = True
    refetch_on_reconnect: RefetchTrigger = True
    refetch_interval: Optional[float] = Field(
        default=None, gt=0, description="Polling period in seconds while observed"
    )
    refetch_interval_in_background: bool = False
    enabled: bool = Field(default=True, description="When False, never auto-fetch")
    select: Optional[Callable[[Any], Any]] = Field(
        default=None, description="Read-time projection of the cached data"
    )
    placeholder_data: Any = Field(
        default=None,
        description="Value (or fn(previous_data)) shown while the first fetch runs",
    )
    initial_data: Any = Field(
        default=None, description="Value (or fn()) seeded into a new entry as real data"
    )
    initial_data_updated_at: Optional[float] = None


class InfiniteQueryOptions(QueryOptions):
    """Options for an entry holding an ordered sequence of pages.

    ``get_next_page_param(last_page, all_pages, last_param, all_params)``
    returns the cursor for the page after the last one, or ``None`` when
    there is none. ``get_previous_page_param(first_page, all_pages,
    first_param, all_params)`` is the mirror image.
    """

    initial_page_param: Any = None
    get_next_page_param: Optional[Callable[..., Any]] = None
    get_previous_page_param: Optional[Callable[..., Any]] = None
    max_pages: Optional[int] = Field(default=None, ge=1)


class MutationOptions(BaseModel):
    """Write operation plus its ordered hooks.

    Every hook may be a plain function or a coroutine function:

    * ``on_mutate(variables)`` -- runs before the write; its return value is
      the rollback context handed to the other hooks.
    * ``on_success(data, variables, context)``
    * ``on_error(error, variables, context)``
    * ``on_settled(data, error, variables, context)`` -- always last.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    mutation_fn: Callable[[Any], Awaitable[Any]]
    mutation_key: Any = None
    on_mutate: Optional[Callable[..., Any]] = None
    on_success: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None
    on_settled: Optional[Callable[..., Any]] = None


class QueryFilters(BaseModel):
    """Selects a set of entries for invalidate, remove, refetch and cancel.

    ``query_key`` is a partial key matched by prefix (see
    :func:`~querycache.keys.is_prefix_of`); ``None`` matches every key.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    query_key: Any = None
    exact: bool = False
    predicate: Optional[Callable[[CacheEntry], bool]] = None
    stale: Optional[bool] = None
    fetching: Optional[bool] = None
    type: QueryType = QueryType.ALL


class ApiConfig(BaseModel):
    """Settings for the demo REST adapter in :mod:`querycache.api`."""

    base_url: str = Field(
        default="https://jsonplaceholder.typicode.com",
        description="Base URL serving /posts",
    )
    users_url: str = Field(
        default="https://api.github.com/users", description="Endpoint listing users"
    )
    timeout: float = Field(default=10.0, gt=0, description="Request timeout in seconds")
    page_size: int = Field(default=3, ge=1, description="Posts per page")
    users_page_size: int = Field(default=10, ge=1, description="Users per page")


class ClientConfig(BaseModel):
    """Client-wide defaults resolved by :func:`querycache.config.resolve_config`."""

    queries: QueryOptions = Field(default_factory=QueryOptions)
    retry_base_delay: float = Field(default=1.0, ge=0, description="Backoff base in seconds")
    retry_max_delay: float = Field(default=30.0, ge=0, description="Backoff cap in seconds")
    api: ApiConfig = Field(default_factory=ApiConfig)


# --- State ---


class InfiniteData(BaseModel):
    """Data of an infinite entry: pages and the cursor each was fetched with."""

    pages: list[Any] = Field(default_factory=list)
    page_params: list[Any] = Field(default_factory=list)


class CacheEntry(BaseModel):
    """One cached query. The store owns the live instance; callers get copies.

    ``status`` stays ``SUCCESS`` when a refetch fails after data was
    fetched once, so stale data is preferred over an error.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: CanonicalKey
    query_key: Any = None
    data: Any = None
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.PENDING
    fetch_status: FetchStatus = FetchStatus.IDLE
    data_updated_at: float = 0.0
    error_updated_at: float = 0.0
    stale_time: float = 0.0
    gc_time: float = 300.0
    observer_count: int = 0
    retry_count: int = 0
    is_invalidated: bool = False
    options: QueryOptions = Field(default_factory=QueryOptions)
    fetch_fn: Optional[Callable[..., Awaitable[Any]]] = Field(default=None, repr=False)

    @property
    def has_data(self) -> bool:
        return self.status == QueryStatus.SUCCESS

    @property
    def is_infinite(self) -> bool:
        return isinstance(self.options, InfiniteQueryOptions)

    def is_stale(self, now: float) -> bool:
        """Return ``True`` when the entry has no data, was invalidated, or aged out."""
        if not self.has_data or self.is_invalidated:
            return True
        return now - self.data_updated_at >= self.stale_time

    def snapshot(self) -> CacheEntry:
        """Return a shallow copy safe to hand to observers."""
        return self.model_copy()


class QueryResult(BaseModel):
    """What a :class:`~querycache.observer.QueryObserver` exposes to a consumer."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: Any = None
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.PENDING
    fetch_status: FetchStatus = FetchStatus.IDLE
    data_updated_at: float = 0.0
    error_updated_at: float = 0.0
    failure_count: int = 0
    is_stale: bool = True
    is_placeholder_data: bool = False
    has_next_page: bool = False
    has_previous_page: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == QueryStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status == QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == QueryStatus.ERROR

    @property
    def is_fetching(self) -> bool:
        return self.fetch_status == FetchStatus.FETCHING

    @property
    def is_paused(self) -> bool:
        return self.fetch_status == FetchStatus.PAUSED

    @property
    def is_loading(self) -> bool:
        """First load: no data yet and a fetch is running."""
        return self.is_pending and self.is_fetching

    @property
    def is_refetching(self) -> bool:
        return self.is_fetching and not self.is_pending


class MutationState(BaseModel):
    """State of one mutation invocation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: MutationStatus = MutationStatus.IDLE
    variables: Any = None
    context: Any = None
    data: Any = None
    error: Optional[BaseException] = None
    submitted_at: float = 0.0

    @property
    def is_idle(self) -> bool:
        return self.status == MutationStatus.IDLE

    @property
    def is_pending(self) -> bool:
        return self.status == MutationStatus.PENDING


QueryFilters.model_rebuild()
