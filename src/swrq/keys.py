"""Query key canonicalization and matching."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from swrq.errors import InvalidKeyError
from swrq.types import QueryKey


@dataclass(frozen=True, slots=True)
class CanonicalKey:
    """Normalized, hashable form of a query key.

    Identity is the canonical JSON text in ``hash``; ``parts`` holds the
    per-segment canonical text and ``segments`` the decoded values.
    """

    hash: str
    parts: tuple[str, ...] = field(compare=False)
    segments: tuple[Any, ...] = field(compare=False)

    def __repr__(self) -> str:
        return f"Key({self.hash})"

    def __str__(self) -> str:
        return self.hash

    def __len__(self) -> int:
        return len(self.parts)


def _dump(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonicalize(key: QueryKey | CanonicalKey) -> CanonicalKey:
    """Canonicalize a query key.

    A scalar is a one-segment key; lists and tuples are interchangeable.
    Dict segments compare independent of insertion order.

    Raises:
        InvalidKeyError: empty, cyclic or non JSON-like keys.
    """
    if isinstance(key, CanonicalKey):
        return key

    raw = tuple(key) if isinstance(key, (list, tuple)) else (key,)
    if not raw:
        raise InvalidKeyError("Query key must not be empty")

    try:
        parts = tuple(_dump(segment) for segment in raw)
    except (TypeError, ValueError) as exc:
        # ValueError covers circular references and NaN/inf
        raise InvalidKeyError(f"Invalid query key {key!r}: {exc}") from exc

    return CanonicalKey(
        hash="[" + ",".join(parts) + "]",
        parts=parts,
        segments=tuple(json.loads(part) for part in parts),
    )


def matches_key(
    prefix: QueryKey | CanonicalKey,
    key: QueryKey | CanonicalKey,
    *,
    exact: bool = False,
) -> bool:
    """Check if ``prefix`` selects ``key`` (whole-segment prefix match)."""
    prefix = canonicalize(prefix)
    key = canonicalize(key)
    if exact:
        return prefix == key
    if len(prefix) > len(key):
        return False
    return key.parts[: len(prefix)] == prefix.parts
