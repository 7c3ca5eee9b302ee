# src/mci_registry/main.py
"""
Wiring of the process-wide resource handles.

build_registry() is the one place that creates the database engine, the
object-store backend and the HTTP client. Components receive them through
their constructors; nothing reaches for a global.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy.engine import Engine

from mci_registry.clock import Clock, utcnow
from mci_registry.config import AppSettings
from mci_registry.db.access import get_engine
from mci_registry.db.repository import DefinitionRepository
from mci_registry.db.setup import initialize_database
from mci_registry.services.gc import GarbageCollector
from mci_registry.services.ingestion import IngestionEngine
from mci_registry.services.lifecycle import DefinitionLifecycle
from mci_registry.services.query import RegistryQueryService, SecretsReader
from mci_registry.services.sources import SourceFetcher
from mci_registry.storage import ObjectBackend, ObjectStoreClient, create_backend

logger = logging.getLogger(__name__)


@dataclass
class Registry:
    settings: AppSettings
    engine: Engine
    http_client: httpx.Client
    store: ObjectStoreClient
    repository: DefinitionRepository
    ingestion: IngestionEngine
    query: RegistryQueryService
    secrets: SecretsReader
    lifecycle: DefinitionLifecycle
    gc: GarbageCollector

    def close(self) -> None:
        self.http_client.close()
        self.store.close()
        self.engine.dispose()
        logger.info("Registry resources released")


def build_registry(
    settings: AppSettings,
    db_engine: Optional[Engine] = None,
    backend: Optional[ObjectBackend] = None,
    http_client: Optional[httpx.Client] = None,
    clock: Clock = utcnow,
    init_db: bool = True,
) -> Registry:
    """
    Construct every component from settings.

    Args:
        settings: Loaded AppSettings
        db_engine: Pre-built engine (tests); otherwise created from settings.database
        backend: Pre-built object backend (tests); otherwise from settings.object_store
        http_client: Pre-built httpx client (tests use MockTransport)
        clock: Time source shared by the repository and the garbage collector
        init_db: Create missing tables on startup
    """
    ing = settings.ingestion

    engine = db_engine if db_engine is not None else get_engine(settings.database)
    if init_db:
        initialize_database(engine)

    if http_client is None:
        http_client = httpx.Client(
            timeout=httpx.Timeout(ing.fetch_timeout_seconds),
            headers={"User-Agent": ing.user_agent},
        )

    store = ObjectStoreClient(
        backend if backend is not None else create_backend(settings.object_store),
        max_attempts=ing.max_attempts,
        backoff_initial_seconds=ing.backoff_initial_seconds,
        backoff_max_seconds=ing.backoff_max_seconds,
    )
    repository = DefinitionRepository(engine, clock=clock)
    fetcher = SourceFetcher(
        http_client,
        max_attempts=ing.max_attempts,
        backoff_initial_seconds=ing.backoff_initial_seconds,
        backoff_max_seconds=ing.backoff_max_seconds,
        max_payload_bytes=ing.max_payload_mb * 1024 * 1024,
        user_agent=ing.user_agent,
        fetch_timeout_seconds=ing.fetch_timeout_seconds,
    )

    logger.info(
        f"Registry ready: database={settings.database.type} "
        f"object_store={settings.object_store.type}"
    )
    return Registry(
        settings=settings,
        engine=engine,
        http_client=http_client,
        store=store,
        repository=repository,
        ingestion=IngestionEngine(repository, store, fetcher),
        query=RegistryQueryService(repository, store),
        secrets=SecretsReader(repository, store),
        lifecycle=DefinitionLifecycle(repository),
        gc=GarbageCollector(
            repository,
            store,
            grace_period=timedelta(seconds=settings.gc.grace_period_seconds),
            clock=clock,
        ),
    )
