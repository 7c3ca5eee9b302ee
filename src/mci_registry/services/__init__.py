# src/mci_registry/services/__init__.py
"""
Registry services.

- IngestionEngine: fetch -> verify -> store -> commit
- GarbageCollector: grace-period reclamation of unreferenced blobs
- RegistryQueryService / SecretsReader: read side
- DefinitionLifecycle: enable/disable, metadata edits, deletion
"""

from mci_registry.services.gc import GarbageCollector, GCThread, SweepReport
from mci_registry.services.ingestion import IngestionEngine, IngestionState
from mci_registry.services.lifecycle import DefinitionLifecycle
from mci_registry.services.query import RegistryQueryService, SecretsReader
from mci_registry.services.sources import Source, SourceFetcher

__all__ = [
    "GarbageCollector",
    "GCThread",
    "SweepReport",
    "IngestionEngine",
    "IngestionState",
    "DefinitionLifecycle",
    "RegistryQueryService",
    "SecretsReader",
    "Source",
    "SourceFetcher",
]
