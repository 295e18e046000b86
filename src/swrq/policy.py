"""Staleness and cache-lifetime policy."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable

from swrq.duration import parse_duration
from swrq.entry import QueryEntry
from swrq.types import QueryOptions, QueryStatus, RefetchMode

logger = logging.getLogger(__name__)


def is_stale(entry: QueryEntry, stale_time: int | float, now: int | float) -> bool:
    """Check if cached data is old enough to revalidate on the next read."""
    if not entry.has_data or entry.is_invalidated:
        return True
    return now - entry.updated_at >= stale_time


def should_fetch_on_subscribe(
    entry: QueryEntry, options: QueryOptions, now: int | float
) -> bool:
    """Decide whether a new subscriber triggers a fetch."""
    if not options.enabled:
        return False
    if not entry.has_data:
        return True
    return _wants_refetch(options.refetch_on_mount, entry, options, now)


def should_refetch_on(
    mode: RefetchMode, entry: QueryEntry, options: QueryOptions, now: int | float
) -> bool:
    """Decide for the focus and reconnect triggers."""
    if not options.enabled:
        return False
    return _wants_refetch(mode, entry, options, now)


def _wants_refetch(
    mode: RefetchMode, entry: QueryEntry, options: QueryOptions, now: int | float
) -> bool:
    if mode == "always":
        return True
    if not mode:
        return False
    if entry.status is QueryStatus.ERROR:
        return True
    return is_stale(entry, parse_duration(options.stale_time), now)


class EvictionScheduler:
    """Owns the cache-time timers of unreferenced entries."""

    def schedule(
        self, entry: QueryEntry, on_expire: Callable[[QueryEntry], None]
    ) -> None:
        """Start the eviction timer; replaces any pending one."""
        self.cancel(entry)
        if math.isinf(entry.cache_time):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, %s stays until removed", entry.key)
            return
        entry.gc_handle = loop.call_later(
            entry.cache_time / 1000, self._expire, entry, on_expire
        )
        logger.debug("Eviction of %s scheduled in %sms", entry.key, entry.cache_time)

    def cancel(self, entry: QueryEntry) -> None:
        if entry.gc_handle is not None:
            entry.gc_handle.cancel()
            entry.gc_handle = None

    def _expire(
        self, entry: QueryEntry, on_expire: Callable[[QueryEntry], None]
    ) -> None:
        entry.gc_handle = None
        if entry.subscriber_count:
            return
        on_expire(entry)
