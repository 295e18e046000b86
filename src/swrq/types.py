"""Core types for the swrq query cache."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    Literal,
    TypeVar,
    Union,
)

from swrq.errors import CancelledError

if TYPE_CHECKING:
    from swrq.keys import CanonicalKey

T = TypeVar("T")

# Duration type alias
Duration = Union[str, int, float, timedelta]  # "30s", "5m", "inf" or milliseconds

# JSON-like scalar or an ordered sequence of JSON-like segments
QueryKey = Union[str, int, float, bool, None, Sequence[Any]]

RefetchMode = Union[bool, Literal["always"]]


class QueryStatus(str, Enum):
    """Lifecycle status of a query entry."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class QuerySnapshot(Generic[T]):
    """Immutable point-in-time view of a query entry."""

    key: CanonicalKey
    status: QueryStatus
    data: T | None
    has_data: bool
    error: BaseException | None
    updated_at: int | float
    error_updated_at: int | float
    is_fetching: bool
    is_stale: bool
    is_invalidated: bool
    failure_count: int

    @property
    def is_idle(self) -> bool:
        return self.status is QueryStatus.IDLE

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status is QueryStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is QueryStatus.ERROR

    @property
    def is_refetching(self) -> bool:
        """Background revalidation of an entry that already settled once."""
        return self.is_fetching and not self.is_loading


@dataclass(frozen=True, slots=True)
class FetchContext:
    """Argument handed to every fetch function."""

    query_key: tuple[Any, ...]
    cancel_signal: asyncio.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_signal.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError if the run was signalled to stop."""
        if self.cancel_signal.is_set():
            raise CancelledError(f"Fetch for {list(self.query_key)!r} cancelled")


FetchFn = Callable[[FetchContext], Awaitable[Any]]
RetryOption = Union[bool, int, Callable[[int, BaseException], bool]]
RetryDelayOption = Union[Duration, Callable[[int, BaseException], Duration], None]


@dataclass(frozen=True, slots=True)
class QueryOptions:
    """Configuration for a query subscription.

    Client defaults and per-subscription overrides are merged with
    ``dataclasses.replace``, so an unknown option name raises ``TypeError``.
    """

    stale_time: Duration = 0
    cache_time: Duration = "5m"
    enabled: bool = True
    refetch_on_mount: RefetchMode = True
    refetch_on_window_focus: RefetchMode = True
    refetch_on_reconnect: RefetchMode = True
    refetch_interval: Duration | Literal[False] | None = False
    refetch_interval_in_background: bool = False
    initial_data: Any = None  # value or zero-arg callable, None means absent
    initial_data_updated_at: int | None = None
    select: Callable[[Any], Any] | None = None
    on_success: Callable[[Any], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None
    on_settled: Callable[[Any, BaseException | None], Any] | None = None
    retry: RetryOption = 3
    retry_delay: RetryDelayOption = None
