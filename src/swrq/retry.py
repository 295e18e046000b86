"""Retry policy applied by the fetch executor before a run fails for good."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

from swrq.duration import parse_duration
from swrq.types import RetryDelayOption, RetryOption

_MAX_DELAY_MS = 30_000


def default_retry_delay(failure_count: int, error: BaseException) -> int:
    """Exponential backoff: 1s, 2s, 4s ... capped at 30s."""
    return min(1000 * 2 ** (failure_count - 1), _MAX_DELAY_MS)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to retry a failing fetch and how long to wait."""

    retries: int | float | Callable[[int, BaseException], bool]
    delay: Callable[[int, BaseException], int | float]

    @classmethod
    def from_options(
        cls, retry: RetryOption, retry_delay: RetryDelayOption = None
    ) -> RetryPolicy:
        if isinstance(retry, bool):
            retries: int | float | Callable[[int, BaseException], bool] = (
                math.inf if retry else 0
            )
        elif isinstance(retry, int):
            if retry < 0:
                raise ValueError("retry must be >= 0")
            retries = retry
        elif callable(retry):
            retries = retry
        else:
            raise TypeError(f"Invalid retry option: {retry!r}")

        if retry_delay is None:
            delay: Callable[[int, BaseException], int | float] = default_retry_delay
        elif callable(retry_delay):
            user_delay = retry_delay

            def delay(failure_count: int, error: BaseException) -> int | float:
                return parse_duration(user_delay(failure_count, error))

        else:
            fixed = parse_duration(retry_delay)

            def delay(failure_count: int, error: BaseException) -> int | float:
                return fixed

        return cls(retries=retries, delay=delay)

    def should_retry(self, failure_count: int, error: BaseException) -> bool:
        """Decide after ``failure_count`` consecutive failures."""
        if callable(self.retries):
            return bool(self.retries(failure_count, error))
        return failure_count <= self.retries

    def delay_ms(self, failure_count: int, error: BaseException) -> int | float:
        return self.delay(failure_count, error)


NO_RETRY = RetryPolicy.from_options(False)
