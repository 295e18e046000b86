"""Mutations - writes that share state with the read cache."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from swrq.types import QueryKey, QueryStatus

if TYPE_CHECKING:
    from swrq.client import QueryClient

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with query keys to invalidate."""

    result: T
    invalidates: list[QueryKey] = field(default_factory=list)


MutationFn = Callable[[V], Awaitable[Union[R, MutationResult[R]]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Mutation(Generic[V, R]):
    """A remote write with optimistic-update hooks.

    Callback order for ``await mutation.mutate(variables)``:

    1. ``on_mutate(variables)`` before the write starts; its return value is
       the context handed to the other callbacks (e.g. a rollback snapshot)
    2. the mutation function itself
    3. ``on_success(result, variables, context)`` or
       ``on_error(error, variables, context)``
    4. ``on_settled(result, error, variables, context)``

    Callbacks may be plain functions or coroutines. A failing mutation
    re-raises its error after the callbacks ran.
    """

    def __init__(
        self,
        client: QueryClient,
        fn: MutationFn[V, R],
        *,
        on_mutate: Callable[[V], Any] | None = None,
        on_success: Callable[[R, V, Any], Any] | None = None,
        on_error: Callable[[BaseException, V, Any], Any] | None = None,
        on_settled: Callable[[R | None, BaseException | None, V, Any], Any]
        | None = None,
    ) -> None:
        self._client = client
        self._fn = fn
        self._on_mutate = on_mutate
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled
        self.status = QueryStatus.IDLE
        self.data: R | None = None
        self.error: BaseException | None = None
        self.variables: V | None = None

    def __repr__(self) -> str:
        name = getattr(self._fn, "__name__", self._fn)
        return f"Mutation({name!r}, {self.status.value})"

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    async def __call__(self, variables: V = None) -> R:  # type: ignore[assignment]
        return await self.mutate(variables)

    async def mutate(self, variables: V = None) -> R:  # type: ignore[assignment]
        """Run the mutation."""
        self.status = QueryStatus.LOADING
        self.variables = variables
        self.error = None

        context = None
        try:
            if self._on_mutate is not None:
                context = await _maybe_await(self._on_mutate(variables))
            outcome = await self._fn(variables)
        except Exception as exc:
            self.status = QueryStatus.ERROR
            self.error = exc
            logger.debug("Mutation %r failed: %r", self, exc)
            if self._on_error is not None:
                await _maybe_await(self._on_error(exc, variables, context))
            if self._on_settled is not None:
                await _maybe_await(self._on_settled(None, exc, variables, context))
            raise

        if isinstance(outcome, MutationResult):
            result = outcome.result
            for key in outcome.invalidates:
                self._client.invalidate(key)
        else:
            result = outcome

        self.status = QueryStatus.SUCCESS
        self.data = result
        if self._on_success is not None:
            await _maybe_await(self._on_success(result, variables, context))
        if self._on_settled is not None:
            await _maybe_await(self._on_settled(result, None, variables, context))
        return result

    def reset(self) -> None:
        """Return to the idle state."""
        self.status = QueryStatus.IDLE
        self.data = None
        self.error = None
        self.variables = None


__all__ = ["Mutation", "MutationResult"]
