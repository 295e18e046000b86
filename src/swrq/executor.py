"""Deduplicating fetch executor.

At most one run is in flight per entry. Late callers attach to the existing
run; a run superseded by a newer one (or cancelled) has its result dropped,
guarded by the entry's monotonically increasing sequence number.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import Any

from swrq.entry import QueryEntry
from swrq.errors import CancelledError, FetchError, QueryError
from swrq.keys import CanonicalKey
from swrq.retry import RetryPolicy
from swrq.types import FetchContext, FetchFn, QuerySnapshot, QueryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchEvent:
    """Outcome of a completed run, delivered with the notification."""

    data: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FetchRun:
    """Handle to one fetch run.

    Awaiting it yields the entry snapshot once the run settles; fetch errors
    are never raised here, they are part of the snapshot.
    """

    __slots__ = ("key", "seq", "cancel_signal", "_future", "_dropped", "_successor")

    def __init__(self, key: CanonicalKey, seq: int) -> None:
        self.key = key
        self.seq = seq
        self.cancel_signal = asyncio.Event()
        self._future: asyncio.Future[QuerySnapshot[Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._dropped = False
        self._successor: FetchRun | None = None

    def __await__(self) -> Generator[Any, None, QuerySnapshot[Any]]:
        return asyncio.shield(self._future).__await__()

    def __repr__(self) -> str:
        return f"FetchRun({self.key}, seq={self.seq}, done={self.done()})"

    @property
    def cancelled(self) -> bool:
        return self.cancel_signal.is_set()

    @property
    def dropped(self) -> bool:
        """True if the run settled without a result of its own or a successor's."""
        return self._dropped

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        """Signal the fetch function to stop. Advisory only."""
        self.cancel_signal.set()

    def _settle(self, snapshot: QuerySnapshot[Any], *, dropped: bool = False) -> None:
        if not self._future.done():
            self._dropped = dropped
            self._future.set_result(snapshot)

    def _follow(self, newer: FetchRun) -> None:
        self._successor = newer

        def settle(future: asyncio.Future[QuerySnapshot[Any]]) -> None:
            if not future.cancelled():
                self._settle(future.result(), dropped=newer._dropped)

        newer._future.add_done_callback(settle)


class FetchExecutor:
    """Runs fetch functions against entries, one in flight per entry."""

    def __init__(
        self,
        *,
        clock: Callable[[], int | float],
        notify: Callable[[QueryEntry, FetchEvent | None], None],
        snapshot: Callable[[QueryEntry], QuerySnapshot[Any]],
    ) -> None:
        self._clock = clock
        self._notify = notify
        self._snapshot = snapshot
        self._tasks: set[asyncio.Task[None]] = set()

    def run(self, entry: QueryEntry, *, cancel_in_flight: bool = False) -> FetchRun:
        """Start a run for ``entry`` or attach to the one in flight.

        With ``cancel_in_flight`` the current run is superseded: it is
        signalled, its result is dropped, and awaiting it yields the result
        of the new run.
        """
        previous = entry.in_flight
        if previous is not None:
            if not cancel_in_flight:
                logger.debug("Attaching to fetch #%d for %s", previous.seq, entry.key)
                return previous
            previous.cancel()
            entry.in_flight = None

        if entry.fetch_fn is None:
            raise QueryError(f"No fetch function registered for {entry.key}")

        entry.seq += 1
        run = FetchRun(entry.key, entry.seq)
        if previous is not None:
            previous._follow(run)
            logger.debug("Fetch #%d for %s superseded", previous.seq, entry.key)

        entry.in_flight = run
        entry.is_fetching = True
        if entry.status is QueryStatus.IDLE:
            entry.status = QueryStatus.LOADING
        self._notify(entry, None)

        task = asyncio.get_running_loop().create_task(
            self._execute(entry, run, entry.fetch_fn, entry.retry)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run

    def cancel(self, entry: QueryEntry, *, notify: bool = True) -> bool:
        """Signal the in-flight run and restore the pre-fetch state."""
        run = entry.in_flight
        if run is None:
            return False

        run.cancel()
        entry.in_flight = None
        entry.is_fetching = False
        if entry.status is QueryStatus.LOADING:
            entry.status = QueryStatus.IDLE
        logger.debug("Fetch #%d for %s cancelled", run.seq, entry.key)
        if notify:
            self._notify(entry, None)
        run._settle(self._snapshot(entry), dropped=True)
        return True

    @property
    def pending(self) -> int:
        """Number of fetch tasks still running, including discarded ones."""
        return len(self._tasks)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _is_current(self, entry: QueryEntry, run: FetchRun) -> bool:
        return entry.in_flight is run and entry.seq == run.seq

    async def _execute(
        self,
        entry: QueryEntry,
        run: FetchRun,
        fn: FetchFn,
        retry: RetryPolicy,
    ) -> None:
        ctx = FetchContext(
            query_key=entry.key.segments, cancel_signal=run.cancel_signal
        )
        logger.debug("Fetch #%d for %s started", run.seq, entry.key)

        try:
            data = await self._attempt(entry, run, fn, retry, ctx)
        except asyncio.CancelledError:
            self._discard(entry, run, "task cancelled")
            raise
        except CancelledError:
            self._discard(entry, run, "cancelled")
            return
        except Exception as exc:
            if not self._is_current(entry, run):
                self._discard(entry, run, "superseded")
                return
            error = FetchError(entry.key, exc)
            entry.in_flight = None
            entry.is_fetching = False
            entry.apply_error(error, self._clock())
            logger.debug("Fetch #%d for %s failed: %r", run.seq, entry.key, exc)
            self._notify(entry, FetchEvent(error=error))
        else:
            if not self._is_current(entry, run):
                self._discard(entry, run, "superseded")
                return
            entry.in_flight = None
            entry.is_fetching = False
            entry.apply_success(data, self._clock())
            logger.debug("Fetch #%d for %s succeeded", run.seq, entry.key)
            self._notify(entry, FetchEvent(data=data))

        run._settle(self._snapshot(entry))

    async def _attempt(
        self,
        entry: QueryEntry,
        run: FetchRun,
        fn: FetchFn,
        retry: RetryPolicy,
        ctx: FetchContext,
    ) -> Any:
        failures = 0
        while True:
            try:
                return await fn(ctx)
            except (CancelledError, asyncio.CancelledError):
                raise
            except Exception as exc:
                if run.cancelled:
                    raise CancelledError(f"Fetch for {entry.key} cancelled") from exc
                failures += 1
                if self._is_current(entry, run):
                    entry.failure_count = failures
                if not retry.should_retry(failures, exc):
                    raise

                delay = retry.delay_ms(failures, exc)
                logger.debug(
                    "Fetch #%d for %s failed (%d), retrying in %sms",
                    run.seq,
                    entry.key,
                    failures,
                    delay,
                )
                timeout = None if math.isinf(delay) else delay / 1000
                try:
                    await asyncio.wait_for(run.cancel_signal.wait(), timeout)
                except asyncio.TimeoutError:
                    continue
                raise CancelledError(f"Fetch for {entry.key} cancelled") from exc

    def _discard(self, entry: QueryEntry, run: FetchRun, reason: str) -> None:
        logger.debug(
            "Dropping result of fetch #%d for %s (%s)", run.seq, entry.key, reason
        )
        if self._is_current(entry, run):
            # Fetch function raised CancelledError on its own
            entry.in_flight = None
            entry.is_fetching = False
            if entry.status is QueryStatus.LOADING:
                entry.status = QueryStatus.IDLE
            self._notify(entry, None)
        if run._successor is None:
            # A superseded run settles with its successor instead
            run._settle(self._snapshot(entry), dropped=True)
