"""
conftest.py — Shared Test Fixtures for fleetsync

Provides an in-memory SQLite database, a fake clock, and a fake remote
catalog served through httpx.MockTransport so the whole engine runs
without network access or real sleeps.

Business Rules:
- All tests run against isolated in-memory DB (no prod data risk)
- Every sleep goes through FakeClock, which advances time instead of waiting
- Each test function gets a fresh DB session (tables dropped afterwards)

Called by: all test files via pytest autodiscovery
Depends on: fleetsync.models (Base), fleetsync.connectors.catalog_client
"""

import os
os.environ["DATABASE_URL"] = "sqlite://"  # Must be set before importing fleetsync modules

import re

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleetsync.config import Settings
from fleetsync.connectors.catalog_client import CatalogClient, StaticTokenProvider
from fleetsync.models import Base
from fleetsync.services.rate_governor import RateGovernor

# ── In-memory SQLite engine ──────────────────────────────────────────

TEST_DB_URL = "sqlite://"

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# ── Time ─────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock whose sleep() advances time and records the wait."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ── Fake catalog ─────────────────────────────────────────────────────


def _header(order_id: int, plate: str | None = "ABC1D23", opened: str = "2024-03-01", **extra) -> dict:
    """A list-endpoint record in the catalog's wire format."""
    rec = {
        "codigoOS": order_id,
        "codigoEmpresa": 1,
        "codigoUnidade": 10,
        "dataAbertura": opened,
        "placa": plate,
        "codigoFornecedor": 500,
        "numeroDocumento": f"NF-{order_id}",
        "valorTotal": 0,
        "quantidadeItens": 0,
    }
    rec.update(extra)
    return rec


class FakeCatalog:
    """In-memory catalog speaking the /os list + detail protocol.

    headers: list-endpoint records served in pages by pagina/linhas.
    details: order id → item list. Missing ids get an empty item list.
    detail_responses: order id → httpx.Response overriding the detail call.
    page_responses: queue of httpx.Responses served before real list pages.
    page_errors: page number → httpx.Response replacing that page.
    """

    DETAIL_PATH = re.compile(r"^/os/(\d+)$")

    def __init__(self, headers=None, details=None):
        self.headers: list[dict] = list(headers or [])
        self.details: dict[int, list[dict]] = dict(details or {})
        self.detail_responses: dict[int, httpx.Response] = {}
        self.page_responses: list[httpx.Response] = []
        self.page_errors: dict[int, httpx.Response] = {}
        self.requests: list[httpx.Request] = []

    @property
    def list_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/os"]

    @property
    def detail_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if self.DETAIL_PATH.match(r.url.path)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/os":
            if self.page_responses:
                return _fresh(self.page_responses.pop(0))
            page = int(request.url.params["pagina"])
            if page in self.page_errors:
                return _fresh(self.page_errors[page])
            size = int(request.url.params["linhas"])
            rows = self.headers[(page - 1) * size: page * size]
            return httpx.Response(200, json={"data": {"results": rows}})

        match = self.DETAIL_PATH.match(request.url.path)
        if match:
            order_id = int(match.group(1))
            if order_id in self.detail_responses:
                return _fresh(self.detail_responses[order_id])
            header = next((h for h in self.headers if h.get("codigoOS") == order_id), {"codigoOS": order_id})
            body = dict(header, itens=self.details.get(order_id, []))
            return httpx.Response(200, json={"data": body})

        return httpx.Response(404, json={"error": "not found"})


def _fresh(resp: httpx.Response) -> httpx.Response:
    """Copy a canned response so it can be served more than once."""
    return httpx.Response(resp.status_code, headers=resp.headers, content=resp.content)


@pytest.fixture()
def catalog() -> FakeCatalog:
    return FakeCatalog()


def _client(catalog: FakeCatalog, clock: FakeClock, **kwargs) -> CatalogClient:
    """CatalogClient over the fake transport with a generous governor."""
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(catalog.handler),
        base_url="https://catalog.test",
    )
    governor = kwargs.pop(
        "governor",
        RateGovernor(
            requests_per_minute=10_000,
            requests_per_hour=100_000,
            min_interval=0,
            clock=clock,
            sleep=clock.sleep,
        ),
    )
    return CatalogClient(
        http,
        StaticTokenProvider("test-key"),
        governor,
        sleep=clock.sleep,
        **kwargs,
    )


@pytest.fixture()
def catalog_client(catalog, clock) -> CatalogClient:
    return _client(catalog, clock)


@pytest.fixture()
def test_settings() -> Settings:
    """Small pages and batches so end-to-end runs stay readable."""
    return Settings(
        database_url=TEST_DB_URL,
        catalog_base_url="https://catalog.test",
        catalog_api_key="test-key",
        header_page_size=2,
        header_page_delay=2.0,
        detail_batch_size=2,
        detail_batch_delay=10.0,
        detail_request_delay=0.5,
        insert_batch_size=100,
    )


@pytest.fixture()
def make_header():
    """Factory for list-endpoint records: make_header(42, plate="XYZ9A88")."""
    return _header


@pytest.fixture()
def make_client(catalog, clock):
    """Factory for extra clients over the same fake catalog (custom governor, retries)."""

    def factory(**kwargs) -> CatalogClient:
        return _client(catalog, clock, **kwargs)

    return factory


@pytest.fixture()
def session_factory():
    """Session factory bound to the test engine, for components that open their own sessions."""
    return TestSessionLocal
