"""Tests for the deduplicating fetch executor."""

import asyncio
from typing import Any

import pytest

from swrq import FetchContext, FetchError, QueryStatus, canonicalize
from swrq.entry import QueryEntry
from swrq.executor import FetchEvent, FetchExecutor
from swrq.retry import RetryPolicy, default_retry_delay


class Recorder:
    """Collects notifications sent by the executor."""

    def __init__(self) -> None:
        self.events: list[tuple[QueryStatus, bool, FetchEvent | None]] = []

    def __call__(self, entry: QueryEntry, event: FetchEvent | None) -> None:
        self.events.append((entry.status, entry.is_fetching, event))


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def executor(recorder: Recorder) -> FetchExecutor:
    return FetchExecutor(
        clock=lambda: 5000,
        notify=recorder,
        snapshot=lambda entry: entry.snapshot(is_stale=False),
    )


def make_entry(fn: Any, retry: RetryPolicy | None = None) -> QueryEntry:
    entry = QueryEntry(key=canonicalize(["heroes"]))
    entry.fetch_fn = fn
    if retry is not None:
        entry.retry = retry
    return entry


class TestRun:
    """Basic run lifecycle."""

    async def test_success_updates_entry(
        self, executor: FetchExecutor, recorder: Recorder
    ) -> None:
        async def fetch(ctx: FetchContext) -> list[str]:
            return ["batman"]

        entry = make_entry(fetch)
        run = executor.run(entry)
        assert entry.status is QueryStatus.LOADING
        assert entry.is_fetching is True

        snapshot = await run
        assert snapshot.status is QueryStatus.SUCCESS
        assert snapshot.data == ["batman"]
        assert entry.updated_at == 5000
        assert entry.in_flight is None
        assert entry.is_fetching is False
        # one notification when starting, one on completion
        assert len(recorder.events) == 2
        assert recorder.events[-1][2] == FetchEvent(data=["batman"])

    async def test_failure_is_stored_not_raised(self, executor: FetchExecutor) -> None:
        async def fetch(ctx: FetchContext) -> None:
            raise RuntimeError("boom")

        entry = make_entry(fetch)
        snapshot = await executor.run(entry)
        assert snapshot.status is QueryStatus.ERROR
        assert isinstance(snapshot.error, FetchError)
        assert isinstance(snapshot.error.cause, RuntimeError)
        assert snapshot.error.__cause__ is snapshot.error.cause
        assert entry.error_updated_at == 5000

    async def test_error_keeps_last_good_data(self, executor: FetchExecutor) -> None:
        calls = 0

        async def fetch(ctx: FetchContext) -> str:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("down")
            return "good"

        entry = make_entry(fetch)
        await executor.run(entry)
        snapshot = await executor.run(entry)
        assert snapshot.status is QueryStatus.ERROR
        assert snapshot.data == "good"
        assert snapshot.has_data is True

    async def test_query_key_passed_to_fetch(self, executor: FetchExecutor) -> None:
        seen = []

        async def fetch(ctx: FetchContext) -> None:
            seen.append(ctx.query_key)

        await executor.run(make_entry(fetch))
        assert seen == [("heroes",)]


class TestDeduplication:
    """At most one run per entry."""

    async def test_concurrent_runs_share_one_fetch(
        self, executor: FetchExecutor
    ) -> None:
        fetch_count = 0

        async def slow_fetch(ctx: FetchContext) -> dict:
            nonlocal fetch_count
            fetch_count += 1
            await asyncio.sleep(0.05)
            return {"id": "123"}

        entry = make_entry(slow_fetch)
        runs = [executor.run(entry) for _ in range(5)]
        assert all(run is runs[0] for run in runs)

        snapshots = await asyncio.gather(*runs)
        assert all(s.data == {"id": "123"} for s in snapshots)
        assert fetch_count == 1

    async def test_new_run_after_completion(self, executor: FetchExecutor) -> None:
        fetch_count = 0

        async def fetch(ctx: FetchContext) -> int:
            nonlocal fetch_count
            fetch_count += 1
            return fetch_count

        entry = make_entry(fetch)
        await executor.run(entry)
        snapshot = await executor.run(entry)
        assert fetch_count == 2
        assert snapshot.data == 2
        assert entry.seq == 2


class TestSupersededRuns:
    """Stale results never overwrite newer state."""

    async def test_slow_old_run_is_discarded(self, executor: FetchExecutor) -> None:
        release_first = asyncio.Event()
        calls = 0

        async def fetch(ctx: FetchContext) -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await release_first.wait()
                return "old"
            return "new"

        entry = make_entry(fetch)
        first = executor.run(entry)
        await asyncio.sleep(0)
        second = executor.run(entry, cancel_in_flight=True)
        assert first is not second
        assert first.cancelled is True

        assert (await second).data == "new"
        release_first.set()
        # The superseded handle settles with its successor's result
        assert (await first).data == "new"
        assert first.dropped is False
        await asyncio.sleep(0.01)
        assert entry.data == "new"
        assert entry.status is QueryStatus.SUCCESS

    async def test_superseded_failure_is_discarded(
        self, executor: FetchExecutor
    ) -> None:
        release_first = asyncio.Event()
        calls = 0

        async def fetch(ctx: FetchContext) -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await release_first.wait()
                raise RuntimeError("late failure")
            return "fresh"

        entry = make_entry(fetch)
        executor.run(entry)
        await asyncio.sleep(0)
        await executor.run(entry, cancel_in_flight=True)
        release_first.set()
        await asyncio.sleep(0.01)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.error is None


class TestCancellation:
    """Cooperative cancellation."""

    async def test_cancel_signals_fetch(self, executor: FetchExecutor) -> None:
        signalled = asyncio.Event()

        async def fetch(ctx: FetchContext) -> str:
            await ctx.cancel_signal.wait()
            signalled.set()
            ctx.raise_if_cancelled()
            return "never"

        entry = make_entry(fetch)
        run = executor.run(entry)
        await asyncio.sleep(0)
        assert executor.cancel(entry) is True

        snapshot = await run
        assert snapshot.status is QueryStatus.IDLE
        assert run.dropped is True
        assert snapshot.is_fetching is False
        await asyncio.wait_for(signalled.wait(), 1)
        assert entry.has_data is False

    async def test_cancel_ignored_fetch_result_dropped(
        self, executor: FetchExecutor
    ) -> None:
        async def stubborn(ctx: FetchContext) -> str:
            await asyncio.sleep(0.02)
            return "late"

        entry = make_entry(stubborn)
        executor.run(entry)
        executor.cancel(entry)
        await asyncio.sleep(0.05)
        assert entry.has_data is False
        assert entry.status is QueryStatus.IDLE

    async def test_cancel_keeps_prior_success(self, executor: FetchExecutor) -> None:
        calls = 0

        async def fetch(ctx: FetchContext) -> int:
            nonlocal calls
            calls += 1
            if calls > 1:
                await asyncio.sleep(0.02)
            return calls

        entry = make_entry(fetch)
        await executor.run(entry)
        executor.run(entry)
        executor.cancel(entry)
        assert entry.status is QueryStatus.SUCCESS
        assert entry.data == 1
        assert entry.is_fetching is False

        await asyncio.sleep(0.05)
        assert entry.data == 1

    async def test_cancel_without_run(self, executor: FetchExecutor) -> None:
        async def fetch(ctx: FetchContext) -> None:
            return None

        assert executor.cancel(make_entry(fetch)) is False


class TestRetry:
    """Retry policy inside a single run."""

    async def test_retries_until_success(self, executor: FetchExecutor) -> None:
        calls = 0

        async def flaky(ctx: FetchContext) -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("flaky")
            return "ok"

        entry = make_entry(flaky, RetryPolicy.from_options(3, retry_delay=1))
        snapshot = await executor.run(entry)
        assert calls == 3
        assert snapshot.status is QueryStatus.SUCCESS
        assert snapshot.failure_count == 0

    async def test_gives_up_after_retries(self, executor: FetchExecutor) -> None:
        calls = 0

        async def broken(ctx: FetchContext) -> str:
            nonlocal calls
            calls += 1
            raise RuntimeError("broken")

        entry = make_entry(broken, RetryPolicy.from_options(2, retry_delay="1ms"))
        snapshot = await executor.run(entry)
        assert calls == 3
        assert snapshot.status is QueryStatus.ERROR
        assert snapshot.failure_count == 3

    def test_default_backoff(self) -> None:
        """Test the default delay doubles per failure and is capped."""
        policy = RetryPolicy.from_options(3)
        error = RuntimeError("broken")
        assert policy.delay is default_retry_delay
        assert [policy.delay(n, error) for n in (1, 2, 3)] == [1000, 2000, 4000]
        assert policy.delay(10, error) == 30_000

    async def test_cancel_interrupts_retry_delay(self, executor: FetchExecutor) -> None:
        async def broken(ctx: FetchContext) -> str:
            raise RuntimeError("broken")

        entry = make_entry(broken, RetryPolicy.from_options(True, retry_delay="10s"))
        run = executor.run(entry)
        await asyncio.sleep(0.01)
        executor.cancel(entry)
        snapshot = await asyncio.wait_for(run, 1)
        assert snapshot.status is QueryStatus.IDLE
        await asyncio.sleep(0.01)
        assert executor.pending == 0
