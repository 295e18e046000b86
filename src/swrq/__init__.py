"""swrq - Keyed async query cache with stale-while-revalidate."""

from contextlib import suppress

# Client API
from swrq.client import QueryClient, create_query_client

# Duration parsing
from swrq.duration import parse_duration

# Errors
from swrq.errors import CancelledError, FetchError, InvalidKeyError, QueryError
from swrq.executor import FetchRun

# Keys
from swrq.keys import CanonicalKey, canonicalize, matches_key

# Mutations
from swrq.mutation import Mutation, MutationResult
from swrq.observer import QueryObserver
from swrq.retry import RetryPolicy

# Core types
from swrq.types import (
    Duration,
    FetchContext,
    QueryKey,
    QueryOptions,
    QuerySnapshot,
    QueryStatus,
)

# Optional HTTP helper - only available when httpx is installed
with suppress(ImportError):
    import httpx  # noqa: F401

    from swrq.fetchers import http_json

__version__ = "0.1.0"

__all__ = [
    "CancelledError",
    "CanonicalKey",
    "Duration",
    "FetchContext",
    "FetchError",
    "FetchRun",
    "InvalidKeyError",
    "Mutation",
    "MutationResult",
    "QueryClient",
    "QueryError",
    "QueryKey",
    "QueryObserver",
    "QueryOptions",
    "QuerySnapshot",
    "QueryStatus",
    "RetryPolicy",
    "canonicalize",
    "create_query_client",
    "http_json",
    "matches_key",
    "parse_duration",
]
