# src/mci_registry/services/query.py
"""
Registry Query Service - read-only access to committed definitions.

Reads only see rows committed by the ingestion engine; nothing in flight is
visible. Views never carry secrets keys or digests; secret content is only
reachable through SecretsReader, which the boundary puts behind its own gate.
"""
import logging
from typing import List, Optional, Union

from mci_registry.db.models import Definition
from mci_registry.db.repository import DefinitionFilter, DefinitionRepository, SortBy, SortOrder
from mci_registry.digest import PayloadKind
from mci_registry.errors import NotFoundError, ValidationError
from mci_registry.schemas import DefinitionView
from mci_registry.storage.client import ObjectStoreClient

logger = logging.getLogger(__name__)


class RegistryQueryService:
    def __init__(self, repository: DefinitionRepository, store: ObjectStoreClient):
        self.repository = repository
        self.store = store

    def list(
        self,
        type: Optional[str] = None,
        enabled: Optional[bool] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        sort_by: Union[SortBy, str] = SortBy.NAME,
        sort_order: Union[SortOrder, str] = SortOrder.ASC,
    ) -> List[DefinitionView]:
        """
        List live definitions, ordered by name unless sort_by says otherwise.

        Raises:
            ValidationError: bad paging or sort arguments
        """
        if limit is not None and limit < 0:
            raise ValidationError("'limit' must not be negative")
        if offset is not None and offset < 0:
            raise ValidationError("'offset' must not be negative")
        try:
            filt = DefinitionFilter(
                type=type,
                enabled=enabled,
                query=query,
                limit=limit,
                offset=offset,
                sort_by=SortBy(sort_by),
                sort_order=SortOrder(sort_order),
            )
        except ValueError as e:
            raise ValidationError(str(e)) from None
        rows = self.repository.list(filt)
        return [DefinitionView.model_validate(row) for row in rows]

    def get(self, definition_id: str) -> DefinitionView:
        return DefinitionView.model_validate(self.repository.require(definition_id))

    def read_payload(self, definition_id: str, kind: Union[PayloadKind, str]) -> bytes:
        """
        Return the stored definition or configuration bytes, verified against
        the committed digest.

        Raises:
            NotFoundError: unknown id, or no configuration stored
            IntegrityError: stored blob no longer matches its digest
            ValidationError: kind is secrets or unknown
        """
        try:
            kind = PayloadKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown payload kind: {kind}") from None
        if kind == PayloadKind.SECRETS:
            raise ValidationError("Secrets are only readable through the secrets gate")

        row = self.repository.require(definition_id)
        if kind == PayloadKind.DEFINITION:
            return self.store.get_verified(row.definition_object_key, row.digest)
        if row.configuration_object_key is None:
            raise NotFoundError(f"Definition '{definition_id}' has no configuration")
        return self.store.get_verified(row.configuration_object_key, row.configuration_digest)


class SecretsReader:
    """Fetch-by-key access to secret payloads. Callers must authorize first."""

    def __init__(self, repository: DefinitionRepository, store: ObjectStoreClient):
        self.repository = repository
        self.store = store

    def read(self, definition_id: str) -> bytes:
        row: Definition = self.repository.require(definition_id)
        if row.secrets_object_key is None:
            raise NotFoundError(f"Definition '{definition_id}' has no secrets")
        logger.info(f"Secrets read for definition '{definition_id}'")
        return self.store.get_verified(row.secrets_object_key, row.secrets_digest)
