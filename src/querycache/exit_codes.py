"""Numeric process exit codes used by the ``querycache`` command line.

Each constant maps to an error category and is referenced by the
corresponding :class:`~querycache.exceptions.QueryCacheError` subclass.
Shell scripts driving the demo CLI can inspect the exit code to tell a
failed fetch from a cancelled one without parsing stderr.

Example::

    $ querycache post 999999
    $ echo $?
    4   # EXIT_CLIENT_ERROR -- the API rejected the request
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or configuration."""

EXIT_FETCH_FAILURE = 3
"""A query's fetch function failed after all retries were exhausted."""

EXIT_CLIENT_ERROR = 4
"""The remote API rejected the request with an HTTP 4xx status."""

EXIT_SERVER_ERROR = 5
"""The remote API returned an HTTP 5xx server error."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_CANCELLED = 130
"""The operation was cancelled before it completed."""
