# src/mci_registry/db/models.py
"""
Database Models for the MCI Registry.

- Definition: one row per catalog entry, the committed ("Active") snapshot.
- DefinitionObjectHistory: object keys a definition stopped referencing
  (superseded by a re-sync, or released by deletion). Rows younger than the
  GC grace period keep their blobs alive.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Index,
    Text,
    Boolean,
)

from mci_registry.clock import utcnow
from mci_registry.db.base_session import Base


class Definition(Base):
    """
    A typed, versioned artifact.

    Invariant: `digest` always equals the hash of the blob stored at
    `definition_object_key`; both change in the same transaction.
    `secrets_object_key` / `secrets_digest` are never part of a public view.
    """

    __tablename__ = "definitions"
    id = Column(String(64), primary_key=True)
    type = Column(String(64), nullable=False, index=True)  # open tag, not an enum
    enabled = Column(Boolean, nullable=False, default=False, index=True)
    name = Column(String(64), nullable=False, index=True)
    description = Column(String(500), nullable=False, default="")

    digest = Column(String(80), nullable=False)
    definition_object_key = Column(String(200), nullable=False)
    configuration_digest = Column(String(80), nullable=True)
    configuration_object_key = Column(String(200), nullable=True)
    secrets_digest = Column(String(80), nullable=True)
    secrets_object_key = Column(String(200), nullable=True)

    source_url = Column(Text, nullable=True)  # NULL = submitted directly

    # Bumped on every commit; compare-and-set conditions on (digest, revision).
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True, index=True)  # NULL = live

    @property
    def has_secrets(self) -> bool:
        return self.secrets_object_key is not None

    def object_keys(self) -> set:
        """Every object key this row references."""
        keys = {
            self.definition_object_key,
            self.configuration_object_key,
            self.secrets_object_key,
        }
        keys.discard(None)
        return keys


class DefinitionObjectHistory(Base):
    __tablename__ = "definition_object_history"
    id = Column(Integer, primary_key=True)
    definition_id = Column(String(64), nullable=False)
    object_key = Column(String(200), nullable=False)
    superseded_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_object_history_superseded", "superseded_at"),
        Index("ix_object_history_key", "object_key"),
    )
