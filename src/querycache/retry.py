"""Retry policy for failed fetches.

:class:`RetryPolicy` answers two questions for the fetch coordinator:

* :meth:`RetryPolicy.should_retry` -- may attempt *n* be followed by
  another one, given the error it raised?
* :meth:`RetryPolicy.delay_for` -- how long to wait before that retry?

The default is three retries with exponential backoff
(``min(base_delay * 2 ** attempt_index, max_delay)``: 1 s, 2 s, 4 s, ...
capped at 30 s). Errors that can never succeed on a second try
short-circuit to "no retry" regardless of the configured count; see
:func:`is_retriable`.
"""

from __future__ import annotations

import math
from typing import Optional

import httpx

from querycache.exceptions import (
    CancellationError,
    ConfigurationError,
    FetchFailure,
)
from querycache.models import QueryOptions, RetryDelayValue, RetryValue

DEFAULT_RETRY = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


def is_retriable(error: BaseException) -> bool:
    """Return ``False`` for errors that a retry cannot fix.

    Cancellations, configuration mistakes, :class:`FetchFailure` instances
    flagged ``retriable=False`` and ``httpx`` 4xx status errors are final.
    Everything else is worth another attempt.
    """
    if isinstance(error, (CancellationError, ConfigurationError)):
        return False
    if isinstance(error, FetchFailure):
        return error.retriable
    if isinstance(error, httpx.HTTPStatusError):
        return not 400 <= error.response.status_code < 500
    return True


class RetryPolicy:
    """Decides whether and when a failed fetch is retried.

    Args:
        retry: ``True`` retries forever, ``False`` never, an ``int`` caps
            the number of retries, and a callable
            ``(failure_count, error) -> bool`` decides per failure.
        retry_delay: Fixed delay in seconds, or a callable
            ``(attempt_index, error) -> seconds``. ``None`` selects
            exponential backoff.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.

    Example::

        policy = RetryPolicy(retry=2)
        policy.should_retry(0, ServerError("HTTP 503"))   # True
        policy.delay_for(1)                               # 2.0
    """

    def __init__(
        self,
        retry: RetryValue = DEFAULT_RETRY,
        retry_delay: RetryDelayValue = None,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        if isinstance(retry, int) and not isinstance(retry, bool) and retry < 0:
            raise ConfigurationError(f"retry must be >= 0, got {retry}")
        self._retry = retry
        self._retry_delay = retry_delay
        self._base_delay = base_delay
        self._max_delay = max_delay

    @classmethod
    def from_options(
        cls,
        options: QueryOptions,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> RetryPolicy:
        """Build the policy configured by a query's options."""
        return cls(options.retry, options.retry_delay, base_delay, max_delay)

    @property
    def max_retries(self) -> Optional[float]:
        """The retry cap, ``math.inf`` for unlimited, ``None`` for a predicate."""
        if isinstance(self._retry, bool):
            return math.inf if self._retry else 0
        if isinstance(self._retry, int):
            return self._retry
        return None

    def should_retry(self, attempt_index: int, error: BaseException) -> bool:
        """Return ``True`` if the attempt at *attempt_index* (0-based) should be retried."""
        if not is_retriable(error):
            return False
        if isinstance(self._retry, bool):
            return self._retry
        if isinstance(self._retry, int):
            return attempt_index < self._retry
        return bool(self._retry(attempt_index + 1, error))

    def delay_for(self, attempt_index: int, error: BaseException | None = None) -> float:
        """Seconds to wait before retrying the attempt at *attempt_index*."""
        if self._retry_delay is None:
            return min(self._base_delay * (2 ** attempt_index), self._max_delay)
        if callable(self._retry_delay):
            return max(0.0, float(self._retry_delay(attempt_index, error)))
        return max(0.0, float(self._retry_delay))
