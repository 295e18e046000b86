"""QueryEntry - the cached state for one canonical key."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from swrq.keys import CanonicalKey
from swrq.retry import NO_RETRY, RetryPolicy
from swrq.types import FetchFn, QuerySnapshot, QueryStatus

if TYPE_CHECKING:
    from swrq.executor import FetchRun
    from swrq.observer import QueryObserver


@dataclass(eq=False)
class QueryEntry:
    """Mutable per-key record. Only the client and executor write to it."""

    key: CanonicalKey
    stale_time: int | float = 0
    cache_time: int | float = 300_000
    status: QueryStatus = QueryStatus.IDLE
    data: Any = None
    has_data: bool = False
    error: BaseException | None = None
    updated_at: int | float = 0
    error_updated_at: int | float = 0
    is_fetching: bool = False
    is_invalidated: bool = False
    failure_count: int = 0
    observers: list[QueryObserver[Any]] = field(default_factory=list)
    in_flight: FetchRun | None = None
    seq: int = 0
    fetch_fn: FetchFn | None = None
    retry: RetryPolicy = NO_RETRY
    gc_handle: asyncio.TimerHandle | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self.observers)

    def apply_success(self, data: Any, now: int | float) -> None:
        self.status = QueryStatus.SUCCESS
        self.data = data
        self.has_data = True
        self.error = None
        self.updated_at = now
        self.is_invalidated = False
        self.failure_count = 0

    def apply_error(self, error: BaseException, now: int | float) -> None:
        # Last good data stays readable next to the error
        self.status = QueryStatus.ERROR
        self.error = error
        self.error_updated_at = now

    def snapshot(self, *, is_stale: bool) -> QuerySnapshot[Any]:
        return QuerySnapshot(
            key=self.key,
            status=self.status,
            data=self.data,
            has_data=self.has_data,
            error=self.error,
            updated_at=self.updated_at,
            error_updated_at=self.error_updated_at,
            is_fetching=self.is_fetching,
            is_stale=is_stale,
            is_invalidated=self.is_invalidated,
            failure_count=self.failure_count,
        )
