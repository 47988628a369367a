"""Shared HTTP client factory — connection pooling for catalog requests.

The engine issues one request at a time, so the pool stays small. Build the
client once per process and hand it to CatalogClient.

Usage:
    from fleetsync.http_client import build_http_client, close_client
    http = build_http_client(settings.catalog_base_url, timeout=60)
    ...
    await close_client(http)
"""

import httpx

_LIMITS = httpx.Limits(
    max_connections=5,
    max_keepalive_connections=2,
    keepalive_expiry=30,
)


def build_http_client(base_url: str, timeout: float = 60, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        limits=_LIMITS,
        follow_redirects=False,
        headers={"accept": "application/json"},
        **kwargs,
    )


async def close_client(client: httpx.AsyncClient):
    """Shut down a client built by build_http_client."""
    try:
        await client.aclose()
    except RuntimeError:
        pass
