"""
Pytest fixtures and configuration for MCI Registry tests.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Tuple, Union

import httpx
import pytest

from mci_registry.config import SQLiteConfig
from mci_registry.db.access import get_engine
from mci_registry.db.repository import DefinitionRepository
from mci_registry.db.setup import initialize_database
from mci_registry.services.gc import GarbageCollector
from mci_registry.services.ingestion import IngestionEngine
from mci_registry.services.lifecycle import DefinitionLifecycle
from mci_registry.services.query import RegistryQueryService, SecretsReader
from mci_registry.services.sources import SourceFetcher
from mci_registry.storage import MemoryBackend, ObjectStoreClient

GRACE = timedelta(hours=1)


class FakeClock:
    """Manually advanced clock shared by the backend, repository and GC."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeHttp:
    """
    Scripted responses for httpx.MockTransport.

    Each URL maps to a list of (status, body) tuples or exceptions; the last
    entry repeats once the list is exhausted.
    """

    def __init__(self):
        self.routes: Dict[str, List[Union[Tuple[int, bytes], Exception]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, url: str, *responses):
        self.routes[url] = list(responses)

    def count(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self.routes.get(str(request.url))
        if not script:
            return httpx.Response(404, content=b"not found")
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        status, body = step
        return httpx.Response(status, content=body)


# =============================================================================
# Core handles
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def test_db_engine(tmp_path):
    """File-backed SQLite so separate connections (and threads) share state."""
    engine = get_engine(SQLiteConfig(db_location=str(tmp_path / "test_mci.sqlite3")))
    initialize_database(engine, reset_tables=True)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(test_db_engine, clock):
    return DefinitionRepository(test_db_engine, clock=clock)


@pytest.fixture
def memory_backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def store(memory_backend):
    return ObjectStoreClient(
        memory_backend, max_attempts=3, backoff_initial_seconds=0, backoff_max_seconds=0
    )


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def http_client(fake_http):
    client = httpx.Client(transport=httpx.MockTransport(fake_http.handler))
    yield client
    client.close()


@pytest.fixture
def fetcher(http_client):
    return SourceFetcher(
        http_client,
        max_attempts=3,
        backoff_initial_seconds=0,
        backoff_max_seconds=0,
        max_payload_bytes=8 * 1024 * 1024,
    )


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def ingestion(repository, store, fetcher):
    return IngestionEngine(repository, store, fetcher)


@pytest.fixture
def query(repository, store):
    return RegistryQueryService(repository, store)


@pytest.fixture
def secrets_reader(repository, store):
    return SecretsReader(repository, store)


@pytest.fixture
def lifecycle(repository):
    return DefinitionLifecycle(repository)


@pytest.fixture
def collector(repository, store, clock):
    return GarbageCollector(repository, store, grace_period=GRACE, clock=clock)


@pytest.fixture
def definition_fields():
    """Minimal valid create request for the HTTP connector scenario."""
    return {
        "id": "conn-http",
        "type": "connector",
        "name": "HTTP Connector",
        "description": "Generic HTTP connector",
    }
