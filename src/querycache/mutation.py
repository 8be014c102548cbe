"""Mutation executor: write operations with ordered hooks.

A :class:`Mutation` wraps a :class:`~querycache.models.MutationOptions`
definition. Each call to :meth:`Mutation.execute` is an independent
invocation with its own :class:`~querycache.models.MutationState`; calls
are never deduplicated and never retried.

Hooks run in a fixed order::

    on_mutate(variables) -> context
    mutation_fn(variables)
    on_success(data, variables, context)   | on_error(error, variables, context)
    on_settled(data, error, variables, context)

``on_mutate`` completes before the write starts, so it may patch the cache
optimistically and return whatever it needs to undo the patch. The
executor never rolls back by itself: ``context`` is handed unchanged to
``on_error``, which does the rollback. ``on_settled`` always runs last and
is the usual place to invalidate the affected keys.

:meth:`Mutation.execute` returns a :class:`MutationSuccess` or
:class:`MutationFailure` instead of raising; :meth:`Mutation.mutate` is the
raising variant. An ``on_error`` or ``on_settled`` hook that raises fails
the invocation with the hook's error; ``on_settled`` still runs after a
failing ``on_error``.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from querycache.models import MutationOptions, MutationState, MutationStatus
from querycache.output import debug


@dataclass(frozen=True)
class MutationSuccess:
    data: Any
    variables: Any = None
    context: Any = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class MutationFailure:
    error: BaseException
    variables: Any = None
    context: Any = None

    @property
    def ok(self) -> bool:
        return False


MutationResult = Union[MutationSuccess, MutationFailure]


async def _maybe_await(fn: Optional[Callable[..., Any]], *args: Any) -> Any:
    """Call *fn* (sync or async) if set and return its result."""
    if fn is None:
        return None
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _mark_failed(state: MutationState, error: BaseException) -> None:
    state.status = MutationStatus.ERROR
    state.data = None
    state.error = error


async def _settle_hook(
    state: MutationState,
    error: Optional[BaseException],
    hook: Optional[Callable[..., Any]],
    *args: Any,
) -> Optional[BaseException]:
    """Run ``on_error`` or ``on_settled``; a hook failure becomes the invocation's error."""
    try:
        await _maybe_await(hook, *args)
    except Exception as exc:
        debug(f"Mutation hook {getattr(hook, '__name__', hook)!s} failed: {exc!r}")
        _mark_failed(state, exc)
        return exc
    return error


class Mutation:
    """One mutation definition and the state of its latest invocation.

    Args:
        options: The write function and its hooks.
        clock: Time source for ``submitted_at``.

    Example::

        rename = Mutation(MutationOptions(
            mutation_fn=api.rename,
            on_mutate=patch_cache,
            on_error=lambda err, vars, snapshot: restore(snapshot),
            on_settled=lambda *_: client.invalidate_queries(["users"]),
        ))
        outcome = await rename.execute({"id": 1, "name": "B"})
        if not outcome.ok:
            ...
    """

    def __init__(
        self,
        options: MutationOptions,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options
        self._clock = clock
        self._state = MutationState()
        self._invocations = 0

    @property
    def state(self) -> MutationState:
        """State of the most recently started invocation."""
        return self._state.model_copy()

    def reset(self) -> None:
        """Return the mutation to ``idle``."""
        self._state = MutationState()

    async def execute(self, variables: Any = None) -> MutationResult:
        """Run one invocation and return its outcome without raising."""
        self._invocations += 1
        number = self._invocations
        state = MutationState(
            status=MutationStatus.PENDING,
            variables=variables,
            submitted_at=self._clock(),
        )
        self._state = state
        opts = self.options
        context: Any = None
        data: Any = None
        error: Optional[BaseException] = None
        debug(f"Mutation {self._label} #{number} started")

        try:
            context = await _maybe_await(opts.on_mutate, variables)
            state.context = context
            data = await opts.mutation_fn(variables)
            state.status = MutationStatus.SUCCESS
            state.data = data
            await _maybe_await(opts.on_success, data, variables, context)
        except Exception as exc:
            error = exc
            data = None
            _mark_failed(state, exc)
            error = await _settle_hook(state, error, opts.on_error, exc, variables, context)
        error = await _settle_hook(state, error, opts.on_settled, data, error, variables, context)

        if error is None:
            debug(f"Mutation {self._label} #{number} succeeded")
            return MutationSuccess(data=data, variables=variables, context=context)

        debug(f"Mutation {self._label} #{number} failed: {error!r}")
        return MutationFailure(error=error, variables=variables, context=context)

    async def mutate(self, variables: Any = None) -> Any:
        """Run one invocation and return its data, re-raising its error."""
        outcome = await self.execute(variables)
        if isinstance(outcome, MutationFailure):
            raise outcome.error
        return outcome.data

    @property
    def _label(self) -> str:
        key = self.options.mutation_key
        return repr(key) if key is not None else "<anonymous>"
