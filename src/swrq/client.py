"""QueryClient - the entry registry and trigger coordinator."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import suppress
from dataclasses import replace
from typing import Any, TypeVar, overload

from swrq.duration import parse_duration
from swrq.entry import QueryEntry
from swrq.errors import CancelledError, FetchError
from swrq.executor import FetchEvent, FetchExecutor, FetchRun
from swrq.keys import CanonicalKey, canonicalize, matches_key
from swrq.mutation import Mutation, MutationFn
from swrq.observer import Listener, QueryObserver
from swrq.policy import (
    EvictionScheduler,
    is_stale,
    should_fetch_on_subscribe,
    should_refetch_on,
)
from swrq.retry import RetryPolicy
from swrq.types import (
    FetchFn,
    QueryKey,
    QueryOptions,
    QuerySnapshot,
    QueryStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")
R = TypeVar("R")


def _now_ms() -> int:
    return int(time.time() * 1000)


class QueryClient:
    """Keyed async query cache.

    Owns every QueryEntry and is the only writer to them. Pass the client
    explicitly to whatever consumes it; there is no global instance.

    Usage:
        client = QueryClient()
        sub = client.subscribe(["bookmarks", "books"], fetch_books, stale_time="30s")
        sub.listen(render)
        ...
        client.invalidate(["bookmarks"])
        sub.unsubscribe()
    """

    def __init__(
        self,
        *,
        default_options: QueryOptions | None = None,
        clock: Callable[[], int | float] | None = None,
    ) -> None:
        self._defaults = default_options or QueryOptions()
        self._validate(self._defaults)
        self._clock = clock or _now_ms
        self._entries: dict[CanonicalKey, QueryEntry] = {}
        self._eviction = EvictionScheduler()
        self._executor = FetchExecutor(
            clock=self._clock,
            notify=self._notify,
            snapshot=self._snapshot,
        )
        self._intervals: dict[QueryObserver[Any], asyncio.Task[None]] = {}
        # Open observers of removed entries, adopted by the next entry for the key
        self._orphans: dict[CanonicalKey, list[QueryObserver[Any]]] = {}
        self._background_tasks: set[asyncio.Future[Any]] = set()
        self._focused = True
        self._online = True

    @property
    def default_options(self) -> QueryOptions:
        return self._defaults

    def __contains__(self, key: QueryKey) -> bool:
        return canonicalize(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        key: QueryKey,
        fn: FetchFn,
        *,
        listener: Listener | None = None,
        **options: Any,
    ) -> QueryObserver[Any]:
        """Subscribe to ``key``, fetching it with ``fn`` when needed.

        Args:
            key: Query key, a scalar or a sequence of JSON-like segments
            fn: Async function receiving a FetchContext
            listener: Called with the first snapshot and every change
            **options: QueryOptions overrides (stale_time, cache_time, ...)

        Returns:
            The subscription. Release it with ``unsubscribe()`` or a
            ``with`` block.

        Raises:
            InvalidKeyError: If the key cannot be canonicalized.
            TypeError: On unknown option names.
        """
        canonical = canonicalize(key)
        resolved = self._resolve(options)
        entry = self._ensure_entry(canonical, fn, resolved)

        observer: QueryObserver[Any] = QueryObserver(self, canonical, fn, resolved)
        self._attach(entry, observer)

        if should_fetch_on_subscribe(entry, resolved, self._clock()):
            self._executor.run(entry)
        self._start_interval(observer)

        if listener is not None:
            observer.listen(listener)
        return observer

    # -------------------------------------------------------------------------
    # Imperative reads and writes
    # -------------------------------------------------------------------------

    def get_data(self, key: QueryKey) -> Any | None:
        """Point-in-time read of cached data, ``None`` when absent."""
        entry = self._entries.get(canonicalize(key))
        if entry is None or not entry.has_data:
            return None
        return entry.data

    def get_snapshot(self, key: QueryKey) -> QuerySnapshot[Any] | None:
        entry = self._entries.get(canonicalize(key))
        if entry is None:
            return None
        return self._snapshot(entry)

    def set_data(self, key: QueryKey, updater: Any) -> Any:
        """Synchronously replace cached data without fetching.

        ``updater`` is the new value or a callable receiving the previous
        data (``None`` if absent). An in-flight fetch is left running and
        will overwrite this value when it succeeds; ``cancel`` it first for
        optimistic writes.
        """
        canonical = canonicalize(key)
        entry = self._entries.get(canonical)
        created = entry is None
        if entry is None:
            entry = self._create_entry(
                canonical, parse_duration(self._defaults.cache_time)
            )
            entry.stale_time = parse_duration(self._defaults.stale_time)

        previous = entry.data if entry.has_data else None
        data = updater(previous) if callable(updater) else updater
        entry.apply_success(data, self._clock())
        self._notify(entry, None)

        if created and not entry.subscriber_count:
            self._eviction.schedule(entry, self._evict)
        return data

    async def fetch_query(self, key: QueryKey, fn: FetchFn, **options: Any) -> Any:
        """Return fresh cached data, or fetch it and wait.

        Unlike subscriptions, this raises when the fetch fails.

        Raises:
            FetchError: If the fetch (including retries) failed.
            CancelledError: If the run was cancelled before settling.
        """
        canonical = canonicalize(key)
        resolved = self._resolve(options)
        entry = self._ensure_entry(canonical, fn, resolved)

        stale_time = parse_duration(resolved.stale_time)
        if entry.in_flight is None and not is_stale(entry, stale_time, self._clock()):
            if not entry.subscriber_count and entry.gc_handle is None:
                self._eviction.schedule(entry, self._evict)
            return entry.data

        self._eviction.cancel(entry)
        try:
            run = self._executor.run(entry)
            snapshot = await run
        finally:
            if not entry.subscriber_count and self._entries.get(canonical) is entry:
                self._eviction.schedule(entry, self._evict)

        if run.dropped:
            raise CancelledError(f"Fetch for {canonical} cancelled")
        if snapshot.status is QueryStatus.ERROR and snapshot.error is not None:
            raise snapshot.error
        return snapshot.data

    async def prefetch_query(self, key: QueryKey, fn: FetchFn, **options: Any) -> None:
        """Warm the cache for ``key``. Never raises fetch errors."""
        with suppress(FetchError, CancelledError):
            await self.fetch_query(key, fn, **options)

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def refetch(
        self, key: QueryKey, *, cancel_refetch: bool = False
    ) -> FetchRun | None:
        """Fetch ``key`` now regardless of staleness.

        Attaches to an in-flight run unless ``cancel_refetch`` is set.
        Returns None when the key is unknown.
        """
        entry = self._entries.get(canonicalize(key))
        if entry is None or entry.fetch_fn is None:
            return None
        return self._executor.run(entry, cancel_in_flight=cancel_refetch)

    def refetch_queries(
        self,
        key: QueryKey | None = None,
        *,
        exact: bool = False,
        active_only: bool = True,
    ) -> list[FetchRun]:
        """Refetch every matching entry (only subscribed ones by default)."""
        runs = []
        for entry in self._match(key, exact):
            if entry.fetch_fn is None:
                continue
            if active_only and not self._is_active(entry):
                continue
            runs.append(self._executor.run(entry))
        return runs

    def invalidate(
        self,
        key: QueryKey | None = None,
        *,
        exact: bool = False,
        refetch_active: bool = True,
    ) -> int:
        """Mark matching entries stale.

        ``["bookmarks"]`` matches every key starting with that segment;
        ``None`` matches everything. Entries with enabled subscribers are
        refetched right away, superseding any in-flight run; others are only
        marked and refetch on their next read.

        Returns:
            Number of entries matched.
        """
        count = 0
        for entry in self._match(key, exact):
            count += 1
            entry.is_invalidated = True
            if refetch_active and entry.fetch_fn and self._is_active(entry):
                self._executor.run(entry, cancel_in_flight=True)
        logger.debug("Invalidated %d entries matching %r", count, key)
        return count

    def cancel(self, key: QueryKey | None = None, *, exact: bool = False) -> int:
        """Signal in-flight runs of matching entries and drop their results."""
        count = 0
        for entry in self._match(key, exact):
            if self._executor.cancel(entry):
                count += 1
        return count

    def remove(self, key: QueryKey | None = None, *, exact: bool = False) -> int:
        """Drop matching entries from the cache right away."""
        entries = list(self._match(key, exact))
        for entry in entries:
            self._drop(entry)
            self._orphan_observers(entry)
        return len(entries)

    def clear(self) -> None:
        """Drop every entry.

        Open subscriptions stay open (with their polling timers); they see an
        idle snapshot and rejoin the next entry created for their key.
        """
        for entry in list(self._entries.values()):
            self._drop(entry)
            self._orphan_observers(entry)

    # -------------------------------------------------------------------------
    # Environment signals
    # -------------------------------------------------------------------------

    @property
    def is_focused(self) -> bool:
        return self._focused

    @property
    def is_online(self) -> bool:
        return self._online

    def set_focused(self, focused: bool) -> None:
        """Report window focus. Regaining focus refetches per policy."""
        regained = focused and not self._focused
        self._focused = focused
        if regained:
            logger.debug("Focus regained")
            self._refetch_on("refetch_on_window_focus")

    def set_online(self, online: bool) -> None:
        """Report connectivity. Reconnecting refetches per policy."""
        reconnected = online and not self._online
        self._online = online
        if reconnected:
            logger.debug("Connection restored")
            self._refetch_on("refetch_on_reconnect")

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @overload
    def mutation(self, fn: MutationFn[V, R]) -> Mutation[V, R]: ...

    @overload
    def mutation(
        self, fn: None = None, **callbacks: Any
    ) -> Callable[[MutationFn[V, R]], Mutation[V, R]]: ...

    def mutation(self, fn: Any = None, **callbacks: Any) -> Any:
        """Decorator that turns an async function into a Mutation.

        Usage:
            @client.mutation
            async def add_book(book: dict) -> MutationResult[dict]:
                created = await api.post(book)
                return MutationResult(result=created, invalidates=[["bookmarks"]])

            @client.mutation(on_mutate=optimistic_add, on_error=rollback)
            async def add_movie(movie: dict) -> dict: ...
        """

        def decorator(func: MutationFn[V, R]) -> Mutation[V, R]:
            return Mutation(self, func, **callbacks)

        if fn is not None:
            return decorator(fn)
        return decorator

    async def mutate(
        self, fn: MutationFn[V, R], variables: Any = None, **callbacks: Any
    ) -> R:
        """Run a one-off mutation with the given callbacks."""
        return await Mutation(self, fn, **callbacks).mutate(variables)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _validate(self, options: QueryOptions) -> None:
        parse_duration(options.stale_time)
        parse_duration(options.cache_time)
        if options.refetch_interval not in (False, None):
            parse_duration(options.refetch_interval)
        RetryPolicy.from_options(options.retry, options.retry_delay)

    def _resolve(self, overrides: dict[str, Any]) -> QueryOptions:
        options = replace(self._defaults, **overrides) if overrides else self._defaults
        self._validate(options)
        return options

    def _ensure_entry(
        self, key: CanonicalKey, fn: FetchFn, options: QueryOptions
    ) -> QueryEntry:
        cache_time = parse_duration(options.cache_time)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._create_entry(key, cache_time)
            initial = options.initial_data
            if callable(initial):
                initial = initial()
            if initial is not None:
                updated_at = options.initial_data_updated_at
                entry.apply_success(
                    initial, self._clock() if updated_at is None else updated_at
                )
        else:
            entry.cache_time = max(entry.cache_time, cache_time)

        entry.stale_time = parse_duration(options.stale_time)
        entry.fetch_fn = fn
        entry.retry = RetryPolicy.from_options(options.retry, options.retry_delay)
        return entry

    def _create_entry(self, key: CanonicalKey, cache_time: int | float) -> QueryEntry:
        entry = QueryEntry(key=key, cache_time=cache_time)
        self._entries[key] = entry
        orphans = self._orphans.pop(key, [])
        for observer in orphans:
            entry.cache_time = max(
                entry.cache_time, parse_duration(observer.options.cache_time)
            )
            entry.observers.append(observer)
        logger.debug("Created entry %s (%d observers rejoined)", key, len(orphans))
        return entry

    def _orphan_observers(self, entry: QueryEntry) -> None:
        observers = [o for o in entry.observers if not o.closed]
        entry.observers.clear()
        if not observers:
            return
        self._orphans.setdefault(entry.key, []).extend(observers)
        snapshot = self._snapshot_for(entry.key)
        for observer in observers:
            observer._on_entry_update(snapshot, None)

    def _run_in_background(self, awaitable: Awaitable[Any]) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _attach(self, entry: QueryEntry, observer: QueryObserver[Any]) -> None:
        self._eviction.cancel(entry)
        entry.observers.append(observer)

    def _release(self, observer: QueryObserver[Any]) -> None:
        self._stop_interval(observer)
        orphans = self._orphans.get(observer.key)
        if orphans is not None and observer in orphans:
            orphans.remove(observer)
            if not orphans:
                del self._orphans[observer.key]
            return

        entry = self._entries.get(observer.key)
        if entry is None or observer not in entry.observers:
            return

        entry.observers.remove(observer)
        if entry.subscriber_count == 0:
            self._executor.cancel(entry)
            self._eviction.schedule(entry, self._evict)

    def _refetch_observer(
        self, observer: QueryObserver[Any], *, cancel_refetch: bool
    ) -> FetchRun | None:
        if observer.closed:
            return None
        entry = self._entries.get(observer.key)
        if entry is None:
            # Entry was removed while subscribed; the new entry adopts the observer
            entry = self._ensure_entry(observer.key, observer.fn, observer.options)
        return self._executor.run(entry, cancel_in_flight=cancel_refetch)

    def _options_changed(
        self, observer: QueryObserver[Any], previous: QueryOptions
    ) -> None:
        self._validate(observer.options)
        self._stop_interval(observer)
        entry = self._entries.get(observer.key)
        if entry is None or observer.closed:
            return

        entry.stale_time = parse_duration(observer.options.stale_time)
        entry.cache_time = max(
            entry.cache_time, parse_duration(observer.options.cache_time)
        )
        enabled_now = observer.options.enabled and not previous.enabled
        if enabled_now and should_fetch_on_subscribe(
            entry, observer.options, self._clock()
        ):
            self._executor.run(entry)
        self._start_interval(observer)

    def _is_active(self, entry: QueryEntry) -> bool:
        return any(observer.options.enabled for observer in entry.observers)

    def _match(self, key: QueryKey | None, exact: bool) -> Iterator[QueryEntry]:
        if key is None:
            yield from list(self._entries.values())
            return
        prefix = canonicalize(key)
        for canonical, entry in list(self._entries.items()):
            if matches_key(prefix, canonical, exact=exact):
                yield entry

    def _refetch_on(self, option: str) -> None:
        now = self._clock()
        for entry in list(self._entries.values()):
            if entry.fetch_fn is None:
                continue
            for observer in entry.observers:
                mode = getattr(observer.options, option)
                if should_refetch_on(mode, entry, observer.options, now):
                    self._executor.run(entry)
                    break

    def _start_interval(self, observer: QueryObserver[Any]) -> None:
        options = observer.options
        if not options.enabled or options.refetch_interval in (False, None):
            return
        interval = parse_duration(options.refetch_interval)
        if interval <= 0 or math.isinf(interval):
            return
        task = asyncio.get_running_loop().create_task(self._poll(observer, interval))
        self._intervals[observer] = task

    def _stop_interval(self, observer: QueryObserver[Any]) -> None:
        task = self._intervals.pop(observer, None)
        if task is not None:
            task.cancel()

    async def _poll(self, observer: QueryObserver[Any], interval: int | float) -> None:
        while not observer.closed:
            await asyncio.sleep(interval / 1000)
            if observer.closed:
                return
            background = observer.options.refetch_interval_in_background
            if not self._focused and not background:
                continue
            entry = self._entries.get(observer.key)
            if entry is None or entry.fetch_fn is None:
                continue
            logger.debug("Interval refetch of %s", observer.key)
            self._executor.run(entry)

    def _drop(self, entry: QueryEntry) -> None:
        self._eviction.cancel(entry)
        self._executor.cancel(entry, notify=False)
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]

    def _evict(self, entry: QueryEntry) -> None:
        if self._entries.get(entry.key) is not entry:
            return
        self._drop(entry)
        logger.debug("Evicted %s", entry.key)

    def _snapshot(self, entry: QueryEntry) -> QuerySnapshot[Any]:
        return entry.snapshot(
            is_stale=is_stale(entry, entry.stale_time, self._clock())
        )

    def _snapshot_for(self, key: CanonicalKey) -> QuerySnapshot[Any]:
        entry = self._entries.get(key)
        if entry is not None:
            return self._snapshot(entry)
        return QueryEntry(key=key).snapshot(is_stale=True)

    def _notify(self, entry: QueryEntry, event: FetchEvent | None) -> None:
        snapshot = self._snapshot(entry)
        for observer in list(entry.observers):
            observer._on_entry_update(snapshot, event)


def create_query_client(
    *,
    clock: Callable[[], int | float] | None = None,
    **defaults: Any,
) -> QueryClient:
    """Create a query client from default option keywords.

    Usage:
        client = create_query_client(stale_time="30s", retry=1)

    Raises:
        TypeError: On unknown option names.
        ValueError: On invalid durations or retry settings.
    """
    return QueryClient(default_options=QueryOptions(**defaults), clock=clock)


__all__ = ["QueryClient", "create_query_client"]
