"""Query observers - the consumer side of a subscription."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from swrq.executor import FetchEvent, FetchRun
from swrq.keys import CanonicalKey
from swrq.types import FetchFn, QueryOptions, QuerySnapshot, QueryStatus

if TYPE_CHECKING:
    from swrq.client import QueryClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[QuerySnapshot[Any]], Any]

_CLOSED = object()


def _changed(old: QuerySnapshot[Any] | None, new: QuerySnapshot[Any]) -> bool:
    if old is None:
        return True
    return (
        old.status is not new.status
        or old.data is not new.data
        or old.error is not new.error
        or old.is_fetching != new.is_fetching
    )


def _log_task_error(task: asyncio.Future[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Async query callback raised", exc_info=task.exception())


class QueryObserver(Generic[T]):
    """A live subscription to one query key.

    Usage:
        with client.subscribe(["bookmarks", "books"], fetch_books) as sub:
            sub.listen(render)
            async for snapshot in sub.updates():
                ...

    Leaving the ``with`` block (or calling ``unsubscribe``) releases the
    subscription, which may start the entry's eviction timer.
    """

    def __init__(
        self,
        client: QueryClient,
        key: CanonicalKey,
        fn: FetchFn,
        options: QueryOptions,
    ) -> None:
        self._client = client
        self._key = key
        self._fn = fn
        self._options = options
        self._listeners: list[Listener] = []
        self._queues: list[asyncio.Queue[Any]] = []
        self._last: QuerySnapshot[Any] | None = None
        self._select_input: Any = None
        self._select_output: Any = None
        self._select_ready = False
        self._closed = False

    def __repr__(self) -> str:
        return f"QueryObserver({self._key}, closed={self._closed})"

    @property
    def key(self) -> CanonicalKey:
        return self._key

    @property
    def fn(self) -> FetchFn:
        return self._fn

    @property
    def options(self) -> QueryOptions:
        return self._options

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def snapshot(self) -> QuerySnapshot[T]:
        """Current view of the entry, with ``select`` applied."""
        if self._closed and self._last is not None:
            return self._last
        return self._view(self._client._snapshot_for(self._key))

    def listen(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. It receives the current snapshot immediately.

        Returns a function that removes the listener.
        """
        current = self.snapshot
        self._last = current
        self._listeners.append(listener)
        self._call_user(listener, current)

        def unlisten() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unlisten

    async def updates(self) -> AsyncIterator[QuerySnapshot[T]]:
        """Stream of snapshots: the current one, then every change.

        Ends when the subscription is released.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()
        current = self.snapshot
        self._last = current
        queue.put_nowait(current)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def refetch(self, *, cancel_refetch: bool = False) -> FetchRun | None:
        """Fetch this key now, regardless of staleness."""
        return self._client._refetch_observer(self, cancel_refetch=cancel_refetch)

    def set_options(self, **overrides: Any) -> None:
        """Replace options (for example toggling ``enabled``)."""
        previous = self._options
        self._options = replace(previous, **overrides)
        self._select_ready = False
        self._client._options_changed(self, previous)

    def unsubscribe(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._last = self.snapshot
        self._closed = True
        self._listeners.clear()
        for queue in self._queues:
            queue.put_nowait(_CLOSED)
        self._queues.clear()
        self._client._release(self)

    def __enter__(self) -> QueryObserver[T]:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    async def __aenter__(self) -> QueryObserver[T]:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    # -------------------------------------------------------------------------
    # Called by the client
    # -------------------------------------------------------------------------

    def _on_entry_update(
        self, snapshot: QuerySnapshot[Any], event: FetchEvent | None
    ) -> None:
        if self._closed:
            return
        view = self._view(snapshot)
        if event is not None:
            self._run_callbacks(event, view)

        if not _changed(self._last, view):
            return
        self._last = view
        for listener in list(self._listeners):
            self._call_user(listener, view)
        for queue in self._queues:
            queue.put_nowait(view)

    def _run_callbacks(self, event: FetchEvent, view: QuerySnapshot[Any]) -> None:
        options = self._options
        data, error = None, event.error
        if event.ok and view.is_error:
            error = view.error  # select raised
        elif event.ok:
            data = view.data

        if error is None:
            if options.on_success is not None:
                self._call_user(options.on_success, data)
        elif options.on_error is not None:
            self._call_user(options.on_error, error)
        if options.on_settled is not None:
            self._call_user(options.on_settled, data, error)

    def _call_user(self, callback: Callable[..., Any], *args: Any) -> None:
        """Invoke a consumer callback; errors are logged, never propagated."""
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                task = self._client._run_in_background(result)
                task.add_done_callback(_log_task_error)
        except Exception:
            logger.exception("Query callback %r raised", callback)

    def _select(self, data: Any) -> Any:
        select = self._options.select
        if select is None:
            return data
        if self._select_ready and self._select_input is data:
            return self._select_output
        output = select(data)
        self._select_input = data
        self._select_output = output
        self._select_ready = True
        return output

    def _view(self, snapshot: QuerySnapshot[Any]) -> QuerySnapshot[T]:
        if self._options.select is None or not snapshot.has_data:
            return snapshot
        try:
            selected = self._select(snapshot.data)
        except Exception as exc:
            logger.exception("select for %s raised", self._key)
            return replace(
                snapshot, status=QueryStatus.ERROR, data=None, has_data=False, error=exc
            )
        return replace(snapshot, data=selected)
