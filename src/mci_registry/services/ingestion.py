# src/mci_registry/services/ingestion.py
"""
Ingestion Engine - fetch -> verify -> store -> commit.

State machine:

    PENDING -> FETCHING -> VERIFYING -> STORING -> COMMITTING -> ACTIVE
                  |            |           |            |
           FETCH_FAILED  DIGEST_MISMATCH  STORE_FAILED  COMMIT_FAILED

Design:
- All slow I/O (fetch, blob writes) finishes before the metadata transaction
  opens; the commit is one short compare-and-set on (digest, revision).
- Any failure leaves the previously Active row untouched. Blobs written by a
  failed run are unreferenced and age out through the GC grace period.
- No locks: runs for the same id race at commit and exactly one wins; the
  others get ConflictError. Runs for different ids never interact.
- After the commit every blob written by the run is re-checked and re-put if
  a concurrent GC sweep removed it.
- Secret bytes live only in locals of ingest() and are never logged.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from mci_registry import digest as digests
from mci_registry.db.models import Definition
from mci_registry.db.repository import DefinitionRepository
from mci_registry.digest import PayloadKind
from mci_registry.errors import ConflictError, RegistryError, ValidationError
from mci_registry.schemas import DefinitionView, IngestionResult, IngestRequest, build
from mci_registry.services.sources import SourceFetcher
from mci_registry.storage.client import ObjectStoreClient

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    PENDING = "PENDING"
    FETCHING = "FETCHING"
    VERIFYING = "VERIFYING"
    STORING = "STORING"
    COMMITTING = "COMMITTING"
    ACTIVE = "ACTIVE"
    FETCH_FAILED = "FETCH_FAILED"
    DIGEST_MISMATCH = "DIGEST_MISMATCH"
    STORE_FAILED = "STORE_FAILED"
    COMMIT_FAILED = "COMMIT_FAILED"


TRANSITIONS = {
    IngestionState.PENDING: IngestionState.FETCHING,
    IngestionState.FETCHING: IngestionState.VERIFYING,
    IngestionState.VERIFYING: IngestionState.STORING,
    IngestionState.STORING: IngestionState.COMMITTING,
    IngestionState.COMMITTING: IngestionState.ACTIVE,
}

FAILURES = {
    IngestionState.FETCHING: IngestionState.FETCH_FAILED,
    IngestionState.VERIFYING: IngestionState.DIGEST_MISMATCH,
    IngestionState.STORING: IngestionState.STORE_FAILED,
    IngestionState.COMMITTING: IngestionState.COMMIT_FAILED,
}


class IngestionRun:
    """One pass of a definition through the state machine."""

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        self.state = IngestionState.PENDING
        self.history: List[IngestionState] = [self.state]

    def advance(self) -> IngestionState:
        nxt = TRANSITIONS.get(self.state)
        if nxt is None:
            raise RuntimeError(f"No transition out of {self.state.value}")
        self._enter(nxt)
        return nxt

    def fail(self) -> IngestionState:
        self._enter(FAILURES[self.state])
        return self.state

    def _enter(self, state: IngestionState) -> None:
        logger.debug(f"[{self.definition_id}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def states(self) -> List[str]:
        return [s.value for s in self.history]


class IngestionEngine:
    def __init__(
        self,
        repository: DefinitionRepository,
        store: ObjectStoreClient,
        fetcher: SourceFetcher,
    ):
        self.repository = repository
        self.store = store
        self.fetcher = fetcher

    # =========================================================================
    # Entry points
    # =========================================================================

    def submit(self, **fields) -> IngestionResult:
        """Validate raw fields into an IngestRequest and ingest it."""
        return self.ingest(build(IngestRequest, fields))

    def ingest(self, request: IngestRequest) -> IngestionResult:
        """
        Create or update a definition from a payload or a source URL.

        Returns:
            IngestionResult with the committed view; `changed` is False when
            nothing differed from the current Active row

        Raises:
            FetchError, IntegrityError, StoreError, ConflictError, ValidationError
        """
        current = self.repository.get(request.id, include_deleted=True)
        live = current if current is not None and current.deleted_at is None else None

        if request.expected_prior_digest is not None:
            if live is None or live.digest != request.expected_prior_digest:
                logger.warning(
                    f"Ingestion of '{request.id}' rejected: not at digest "
                    f"{request.expected_prior_digest}"
                )
                raise ConflictError(
                    f"Definition '{request.id}' is not at digest "
                    f"{request.expected_prior_digest}; re-read and resubmit"
                )

        run = IngestionRun(request.id)
        stored: List[Tuple[str, bytes]] = []
        try:
            # --- FETCHING ---
            run.advance()
            if request.payload is not None:
                payload = request.payload
            else:
                payload = self.fetcher.fetch(request.source_url)

            # --- VERIFYING ---
            run.advance()
            if request.expected_digest is not None:
                payload_digest = digests.verify(payload, request.expected_digest)
            else:
                payload_digest = digests.compute(payload)

            configuration = request.configuration
            secrets = request.secrets.get_secret_value() if request.secrets is not None else None

            # --- STORING ---
            run.advance()
            values = self._base_values(request, live)
            values["digest"] = payload_digest
            values["definition_object_key"] = self._store(
                PayloadKind.DEFINITION, payload, payload_digest, stored
            )
            if configuration is not None:
                config_digest = digests.compute(configuration)
                values["configuration_digest"] = config_digest
                values["configuration_object_key"] = self._store(
                    PayloadKind.CONFIGURATION, configuration, config_digest, stored
                )
            if secrets is not None:
                secrets_digest = digests.compute(secrets)
                values["secrets_digest"] = secrets_digest
                values["secrets_object_key"] = self._store(
                    PayloadKind.SECRETS, secrets, secrets_digest, stored
                )

            # --- COMMITTING ---
            run.advance()
            if live is not None and self._unchanged(live, values):
                run.advance()
                logger.info(f"Definition '{request.id}' unchanged at {live.digest}")
                return IngestionResult(
                    definition=DefinitionView.model_validate(live),
                    changed=False,
                    states=run.states,
                )
            committed = self.repository.compare_and_set(request.id, current, values)

        except RegistryError as e:
            failed = run.fail()
            logger.warning(f"Ingestion of '{request.id}' failed in {failed.value}: {e}")
            raise

        self._ensure_stored(request.id, stored)
        run.advance()
        logger.info(
            f"Committed definition '{request.id}' revision {committed.revision} "
            f"digest {committed.digest}"
        )
        return IngestionResult(
            definition=DefinitionView.model_validate(committed),
            changed=True,
            states=run.states,
        )

    def resync(self, definition_id: str) -> IngestionResult:
        """
        Re-fetch a definition from its recorded source_url.

        Unchanged content is a no-op; configuration and secrets are kept.
        """
        current = self.repository.require(definition_id)
        if not current.source_url:
            raise ValidationError(
                f"Definition '{definition_id}' has no source_url to re-sync from"
            )
        return self.submit(
            id=current.id,
            type=current.type,
            name=current.name,
            description=current.description,
            source_url=current.source_url,
        )

    def install(self, manifest_source: str) -> IngestionResult:
        """
        Install (or update) a definition described by a JSON manifest.

        The manifest's file_url is downloaded and verified against its digest.
        """
        manifest = self.fetcher.fetch_manifest(manifest_source)
        logger.info(f"Installing '{manifest.id}' from manifest {manifest_source}")
        return self.submit(
            id=manifest.id,
            type=manifest.type,
            name=manifest.name,
            description=manifest.description,
            source_url=manifest.file_url,
            expected_digest=manifest.digest,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _store(
        self,
        kind: PayloadKind,
        data: bytes,
        payload_digest: str,
        stored: List[Tuple[str, bytes]],
    ) -> str:
        key = digests.object_key(kind, payload_digest)
        self.store.put(key, data)
        stored.append((key, data))
        return key

    def _ensure_stored(self, definition_id: str, stored: List[Tuple[str, bytes]]) -> None:
        """
        Re-put any committed blob that is gone.

        A GC delete racing a deduplicated put can remove the blob between the
        put and the commit; the row now references it, so write it back.
        """
        for key, data in stored:
            if self.store.head(key) is None:
                logger.warning(f"[{definition_id}] {key} vanished before commit; re-storing")
                self.store.put(key, data)

    @staticmethod
    def _base_values(request: IngestRequest, live: Optional[Definition]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "type": request.type,
            "name": request.name,
            "description": request.description,
            "source_url": request.source_url,
            "configuration_digest": None,
            "configuration_object_key": None,
            "secrets_digest": None,
            "secrets_object_key": None,
        }
        if request.enabled is not None:
            values["enabled"] = request.enabled
        elif live is not None:
            values["enabled"] = live.enabled
        else:
            values["enabled"] = False

        # Omitted configuration/secrets carry over from the Active row.
        if live is not None:
            if request.configuration is None and not request.clear_configuration:
                values["configuration_digest"] = live.configuration_digest
                values["configuration_object_key"] = live.configuration_object_key
            if request.secrets is None and not request.clear_secrets:
                values["secrets_digest"] = live.secrets_digest
                values["secrets_object_key"] = live.secrets_object_key
        return values

    @staticmethod
    def _unchanged(live: Definition, values: Dict[str, Any]) -> bool:
        return all(getattr(live, column) == value for column, value in values.items())
