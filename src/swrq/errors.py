"""Exceptions raised and stored by the query cache."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from swrq.keys import CanonicalKey


class QueryError(Exception):
    """Base class for swrq errors."""


class InvalidKeyError(QueryError, ValueError):
    """A query key could not be canonicalized."""


class FetchError(QueryError):
    """A fetch function rejected.

    Stored on the entry and exposed through snapshots. The original exception
    is available as ``cause`` (and as ``__cause__``).
    """

    def __init__(self, key: CanonicalKey, cause: BaseException) -> None:
        super().__init__(f"Fetch for {key} failed: {cause!r}")
        self.key = key
        self.cause = cause
        self.__cause__ = cause


class CancelledError(QueryError):
    """A fetch run was cancelled. Never surfaces in snapshots."""
