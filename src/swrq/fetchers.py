"""HTTP fetch functions built on httpx.

Optional: requires the ``http`` extra (``pip install swrq[http]``).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from swrq.errors import CancelledError
from swrq.types import FetchContext, FetchFn

if TYPE_CHECKING:
    import httpx


def http_json(
    url: str | Callable[[tuple[Any, ...]], str],
    *,
    client: httpx.AsyncClient | None = None,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> FetchFn:
    """Build a fetch function that GETs ``url`` and decodes JSON.

    ``url`` may be a callable of the query key segments:

        client.subscribe(
            ["superheroes", hero_id],
            http_json(lambda key: f"http://localhost:4000/superheroes/{key[1]}"),
        )

    The request is abandoned when the run's cancel signal fires. Non-2xx
    responses raise ``httpx.HTTPStatusError``, which the cache stores as a
    FetchError.
    """
    import httpx

    async def fetch(ctx: FetchContext) -> Any:
        target = url(ctx.query_key) if callable(url) else url
        http = client if client is not None else httpx.AsyncClient(timeout=30.0)
        request = asyncio.ensure_future(
            http.get(target, params=params, headers=headers)
        )
        cancelled = asyncio.ensure_future(ctx.cancel_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {request, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if request not in done:
                raise CancelledError(f"GET {target} cancelled")

            response = request.result()
            response.raise_for_status()
            return response.json()
        finally:
            request.cancel()
            cancelled.cancel()
            if client is None:
                await http.aclose()

    return fetch


__all__ = ["http_json"]
