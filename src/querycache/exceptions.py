"""Exception hierarchy for querycache.

All exceptions inherit from :class:`QueryCacheError`, which carries an
``exit_code`` attribute mapped to a constant from
:mod:`querycache.exit_codes`. The engine itself never exits the process;
the command-line entry point in :func:`querycache.app.main` catches
``QueryCacheError`` and exits with the matching code.

Subclass hierarchy::

    QueryCacheError (exit 1)
    +-- FetchFailure            (exit 3)
    |   +-- ClientRequestError  (exit 4, never retried)
    |   +-- ServerError         (exit 5)
    |   +-- ConnectionError_    (exit 6)
    +-- CancellationError       (exit 130, never retried)
    +-- ConfigurationError      (exit 2, never retried)

Fetch functions may raise anything. Errors that are not
:class:`FetchFailure` instances are stored on the cache entry unchanged and
are treated as retriable by the default retry policy.
"""

from __future__ import annotations

from querycache.exit_codes import (
    EXIT_CANCELLED,
    EXIT_CLIENT_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_FETCH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_SERVER_ERROR,
)


class QueryCacheError(Exception):
    """Base exception for all querycache errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class FetchFailure(QueryCacheError):
    """Raised when a fetch function fails (transport or application error).

    The retry policy consults :attr:`retriable`; subclasses that describe a
    request the server will never accept set it to ``False``.

    Args:
        message: Human-readable error description.
        status_code: HTTP status code when the failure came from a response.
        retriable: Override for the class-level :attr:`retriable` flag.
    """

    exit_code = EXIT_FETCH_FAILURE
    retriable: bool = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retriable: bool | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        if retriable is not None:
            self.retriable = retriable


class ClientRequestError(FetchFailure):
    """Raised when the API rejects a request with an HTTP 4xx status."""

    exit_code = EXIT_CLIENT_ERROR
    retriable = False


class ServerError(FetchFailure):
    """Raised when the API returns an HTTP 5xx server error."""

    exit_code = EXIT_SERVER_ERROR


class ConnectionError_(FetchFailure):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class CancellationError(QueryCacheError):
    """Raised to awaiters of a fetch that was cancelled with ``cancel_queries``."""

    exit_code = EXIT_CANCELLED


class ConfigurationError(QueryCacheError):
    """Raised for invalid keys, options or missing required callbacks."""

    exit_code = EXIT_INVALID_USAGE
