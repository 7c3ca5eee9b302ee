# src/mci_registry/services/lifecycle.py
"""Enable/disable, metadata edits and deletion. Content is never touched here."""
import logging
from typing import Optional

from mci_registry.db.repository import DefinitionRepository
from mci_registry.schemas import DefinitionView, MetadataUpdate, build

logger = logging.getLogger(__name__)


class DefinitionLifecycle:
    def __init__(self, repository: DefinitionRepository):
        self.repository = repository

    def enable(self, definition_id: str) -> DefinitionView:
        row = self.repository.set_enabled(definition_id, True)
        logger.info(f"Enabled definition '{definition_id}'")
        return DefinitionView.model_validate(row)

    def disable(self, definition_id: str) -> DefinitionView:
        row = self.repository.set_enabled(definition_id, False)
        logger.info(f"Disabled definition '{definition_id}'")
        return DefinitionView.model_validate(row)

    def update_metadata(
        self,
        definition_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        type: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> DefinitionView:
        """
        Edit display metadata and/or the enabled gate in one transaction.

        Raises:
            ValidationError: a field breaks the identifier rules
            NotFoundError: unknown or deleted id
        """
        update = build(
            MetadataUpdate,
            {"name": name, "description": description, "type": type, "enabled": enabled},
        )
        row = self.repository.update_metadata(definition_id, **update.model_dump())
        logger.info(f"Updated metadata of definition '{definition_id}' (revision {row.revision})")
        return DefinitionView.model_validate(row)

    def delete(self, definition_id: str) -> DefinitionView:
        """Soft-delete: hide the row and release its blobs to the GC grace period."""
        row = self.repository.soft_delete(definition_id)
        logger.info(f"Deleted definition '{definition_id}'")
        return DefinitionView.model_validate(row)
