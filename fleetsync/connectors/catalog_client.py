"""Remote catalog client — paginated service order listing and detail fetch.

Every HTTP attempt goes through the RateGovernor first. Throttling (429)
is reported back to the governor and retried after Retry-After (or the
default wait); network and 5xx failures retry with exponential backoff.

Usage:
    client = CatalogClient(http, StaticTokenProvider(key), governor)
    rows = await client.list_page(1, 1000)
    detail = await client.get_detail(12345)
"""

import asyncio
from abc import ABC, abstractmethod

import httpx
from loguru import logger

from ..exceptions import CatalogError, CatalogUnavailable, ConfigurationError, ThrottledError
from ..services.rate_governor import RateGovernor

ENDPOINTS = {
    "os": "/os",
}


def endpoint_for(entity: str) -> str:
    """Map an entity name to its catalog path."""
    try:
        return ENDPOINTS[entity]
    except KeyError:
        raise ConfigurationError(f"No endpoint configured for entity: {entity}") from None


class CredentialProvider(ABC):
    """Supplies the API key sent with every catalog request."""

    @abstractmethod
    async def get_token(self) -> str:
        pass

    async def invalidate(self) -> None:
        """Drop a cached token after the catalog rejected it."""


class StaticTokenProvider(CredentialProvider):
    def __init__(self, token: str):
        self._token = token

    async def get_token(self) -> str:
        return self._token


class CatalogClient:
    """Thin wrapper around the catalog API with retry + rate governance."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider,
        governor: RateGovernor,
        endpoint: str = "/os",
        page_param: str = "pagina",
        size_param: str = "linhas",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        default_retry_after: float = 60,
        sleep=asyncio.sleep,
    ):
        self.http = http
        self.credentials = credentials
        self.governor = governor
        self.endpoint = endpoint
        self.page_param = page_param
        self.size_param = size_param
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_retry_after = default_retry_after
        self._sleep = sleep

    async def list_page(self, page: int, page_size: int) -> list[dict]:
        """One page of headers. Empty list when the catalog has no data."""
        data = await self._get(
            self.endpoint, params={self.page_param: page, self.size_param: page_size}
        )
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Catalog {} page {} returned unexpected payload", self.endpoint, page)
            return []
        results = data.get("results")
        if not isinstance(results, list):
            logger.warning("Catalog {} page {} has no results list", self.endpoint, page)
            return []
        return results

    async def get_detail(self, order_id: int) -> dict | None:
        """Header plus its item list, or None when the payload is absent."""
        data = await self._get(f"{self.endpoint}/{order_id}")
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or not data:
            return None
        return data

    async def iter_pages(self, page_size: int, start_page: int = 1):
        """Yield (page, rows) until a page comes back short."""
        page = start_page
        while True:
            rows = await self.list_page(page, page_size)
            yield page, rows
            if len(rows) < page_size:
                return
            page += 1

    # ── Internal retry logic ────────────────────────────────────────

    async def _get(self, path: str, params: dict | None = None):
        """GET → unwrapped JSON payload (None for an empty body)."""
        last_error: Exception | None = None
        reauthed = False
        attempt = 0

        while attempt < self.max_retries:
            attempt += 1
            await self.governor.wait(self.endpoint)
            headers = {"X-API-Key": await self.credentials.get_token()}
            try:
                resp = await self.http.get(path, params=params, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                wait = self.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Catalog connection error on {} — retry in {}s (attempt {}/{}): {}",
                    path, wait, attempt, self.max_retries, e,
                )
                if attempt < self.max_retries:
                    await self._sleep(wait)
                continue

            if resp.status_code in (200, 201):
                return _unwrap(resp)
            if resp.status_code == 204:
                return None

            if resp.status_code == 429:
                wait = _retry_after(resp, self.default_retry_after)
                self.governor.record_throttled(self.endpoint, wait)
                last_error = ThrottledError(f"Catalog throttled on {path}", retry_after=wait)
                logger.warning(
                    "Catalog 429 on {} — retry in {}s (attempt {}/{})",
                    path, wait, attempt, self.max_retries,
                )
                if attempt < self.max_retries:
                    await self._sleep(wait)
                continue

            if resp.status_code == 401 and not reauthed:
                reauthed = True
                attempt -= 1
                logger.info("Catalog rejected credentials, refreshing")
                await self.credentials.invalidate()
                continue

            if resp.status_code >= 500:
                wait = self.retry_delay * 2 ** (attempt - 1)
                last_error = CatalogUnavailable(
                    f"Catalog {resp.status_code} on {path}", status_code=resp.status_code
                )
                logger.warning(
                    "Catalog {} on {} — retry in {}s (attempt {}/{})",
                    resp.status_code, path, wait, attempt, self.max_retries,
                )
                if attempt < self.max_retries:
                    await self._sleep(wait)
                continue

            logger.error("Catalog {} on {}: {}", resp.status_code, path, resp.text[:300])
            raise CatalogError(
                f"Catalog {resp.status_code} on {path}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        logger.error("Catalog request failed after {} attempts: {}", self.max_retries, path)
        if isinstance(last_error, CatalogError):
            raise last_error
        raise CatalogUnavailable(f"Catalog unreachable on {path}: {last_error}") from last_error


def _retry_after(resp: httpx.Response, default: float) -> float:
    value = resp.headers.get("retry-after")
    if value is None:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default


def _unwrap(resp: httpx.Response):
    if not resp.content:
        return None
    try:
        body = resp.json()
    except ValueError:
        logger.warning("Catalog returned non-JSON body for {}", resp.request.url)
        return None
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body
