# src/mci_registry/db/repository.py
"""
Metadata Store Accessor - transactional access to the definitions relation.

Every mutating method is a single short transaction. Commit paths issue their
write first (UPDATE ... WHERE <precondition>) and only read afterwards, so on
SQLite the write lock is taken up front and on Postgres the row lock is held
for the rest of the transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Any

import sqlalchemy as sa
from sqlalchemy import select, update, delete, or_, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from mci_registry.clock import Clock, utcnow
from mci_registry.db.base_session import SessionLocal
from mci_registry.db.models import Definition, DefinitionObjectHistory
from mci_registry.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Columns the ingestion engine owns; metadata updates may not touch them.
CONTENT_COLUMNS = (
    "digest",
    "definition_object_key",
    "configuration_digest",
    "configuration_object_key",
    "secrets_digest",
    "secrets_object_key",
)
METADATA_COLUMNS = ("type", "name", "description", "enabled")


class SortBy(str, Enum):
    ID = "id"
    NAME = "name"
    TYPE = "type"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass
class DefinitionFilter:
    type: Optional[str] = None
    enabled: Optional[bool] = None
    query: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    sort_by: SortBy = SortBy.NAME
    sort_order: SortOrder = SortOrder.ASC


class DefinitionRepository:
    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def _session(self) -> Session:
        return SessionLocal(bind=self.engine)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, definition_id: str, include_deleted: bool = False) -> Optional[Definition]:
        """Return the committed row, or None. Deleted rows are hidden by default."""
        with self._session() as session:
            row = session.get(Definition, definition_id)
            if row is None or (row.deleted_at is not None and not include_deleted):
                return None
            session.expunge(row)
            return row

    def require(self, definition_id: str) -> Definition:
        row = self.get(definition_id)
        if row is None:
            raise NotFoundError(f"Definition '{definition_id}' not found")
        return row

    def list(self, filt: Optional[DefinitionFilter] = None) -> List[Definition]:
        filt = filt or DefinitionFilter()
        stmt = select(Definition).where(Definition.deleted_at.is_(None))

        if filt.query:
            pattern = f"%{filt.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Definition.id).like(pattern),
                    func.lower(Definition.name).like(pattern),
                    func.lower(Definition.description).like(pattern),
                )
            )
        if filt.enabled is not None:
            stmt = stmt.where(Definition.enabled == filt.enabled)
        if filt.type is not None:
            stmt = stmt.where(Definition.type == filt.type)

        sort_column = {
            SortBy.ID: Definition.id,
            SortBy.NAME: Definition.name,
            SortBy.TYPE: Definition.type,
        }[SortBy(filt.sort_by)]
        if SortOrder(filt.sort_order) == SortOrder.DESC:
            stmt = stmt.order_by(sort_column.desc(), Definition.id.desc())
        else:
            stmt = stmt.order_by(sort_column.asc(), Definition.id.asc())

        if filt.limit is not None:
            stmt = stmt.limit(filt.limit)
        if filt.offset is not None:
            stmt = stmt.offset(filt.offset)

        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            session.expunge_all()
            return list(rows)

    def referenced_keys(self, grace_period: timedelta, now: Optional[datetime] = None) -> Set[str]:
        """
        All object keys that must survive a GC sweep: keys of live rows plus
        keys superseded or released less than grace_period ago.

        Runs as a single UNION statement so it reads one consistent snapshot.
        """
        stmt = self._referenced_stmt((now or self.clock()) - grace_period)
        with self.engine.connect() as conn:
            return {row[0] for row in conn.execute(stmt)}

    def is_referenced(
        self, object_key: str, grace_period: timedelta, now: Optional[datetime] = None
    ) -> bool:
        """Point check of one key against the same rules as referenced_keys()."""
        refs = self._referenced_stmt((now or self.clock()) - grace_period).subquery()
        stmt = select(refs.c.k).where(refs.c.k == object_key).limit(1)
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    @staticmethod
    def _referenced_stmt(cutoff: datetime):
        live = Definition.deleted_at.is_(None)
        return sa.union(
            select(Definition.definition_object_key.label("k")).where(live),
            select(Definition.configuration_object_key).where(
                live, Definition.configuration_object_key.is_not(None)
            ),
            select(Definition.secrets_object_key).where(
                live, Definition.secrets_object_key.is_not(None)
            ),
            select(DefinitionObjectHistory.object_key).where(
                DefinitionObjectHistory.superseded_at >= cutoff
            ),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert(self, definition_id: str, values: Dict[str, Any]) -> Definition:
        """
        Unconditional atomic upsert of the full field set.

        Used for administrative repair; ingestion always goes through
        compare_and_set() instead.
        """
        now = self.clock()
        with self._session() as session:
            with session.begin():
                row = session.get(Definition, definition_id, with_for_update=True)
                if row is None:
                    session.add(
                        Definition(
                            id=definition_id,
                            revision=1,
                            created_at=now,
                            updated_at=now,
                            **values,
                        )
                    )
                else:
                    old_keys = row.object_keys() if row.deleted_at is None else set()
                    for column, value in values.items():
                        setattr(row, column, value)
                    row.revision += 1
                    row.updated_at = now
                    row.deleted_at = None
                    self._record_superseded(
                        session, definition_id, old_keys - row.object_keys(), now
                    )
            return self._reload(session, definition_id)

    def compare_and_set(
        self,
        definition_id: str,
        expected: Optional[Definition],
        values: Dict[str, Any],
    ) -> Definition:
        """
        Commit new field values only if the row still matches `expected`.

        Args:
            definition_id: Row id
            expected: Snapshot read before the slow phases, or None when the
                definition did not exist (the commit is then an INSERT)
            values: Full set of new column values

        Raises:
            ConflictError: The row changed (or appeared) since the snapshot
        """
        now = self.clock()
        try:
            with self._session() as session:
                with session.begin():
                    if expected is None:
                        session.add(
                            Definition(
                                id=definition_id,
                                revision=1,
                                created_at=now,
                                updated_at=now,
                                **values,
                            )
                        )
                        session.flush()
                    else:
                        result = session.execute(
                            update(Definition)
                            .execution_options(synchronize_session=False)
                            .where(
                                Definition.id == definition_id,
                                Definition.digest == expected.digest,
                                Definition.revision == expected.revision,
                            )
                            .values(
                                **values,
                                revision=expected.revision + 1,
                                updated_at=now,
                                deleted_at=None,
                            )
                        )
                        if result.rowcount != 1:
                            raise ConflictError(
                                f"Definition '{definition_id}' changed since revision "
                                f"{expected.revision}; re-read and resubmit"
                            )
                        # The precondition pins the replaced row to `expected`,
                        # so its keys are exactly the ones being dropped.
                        if expected.deleted_at is None:
                            new_keys = {
                                values.get(col)
                                for col in CONTENT_COLUMNS
                                if col.endswith("_object_key")
                            }
                            self._record_superseded(
                                session, definition_id, expected.object_keys() - new_keys, now
                            )
                return self._reload(session, definition_id)
        except sa.exc.IntegrityError as e:
            raise ConflictError(
                f"Definition '{definition_id}' was created concurrently; re-read and resubmit"
            ) from e

    def update_metadata(self, definition_id: str, **fields) -> Definition:
        """Edit display metadata or the enabled gate. Content is never touched."""
        unknown = set(fields) - set(METADATA_COLUMNS)
        if unknown:
            raise ValueError(f"Not metadata columns: {sorted(unknown)}")
        changes = {k: v for k, v in fields.items() if v is not None}

        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(Definition)
                    .execution_options(synchronize_session=False)
                    .where(Definition.id == definition_id, Definition.deleted_at.is_(None))
                    .values(
                        **changes,
                        revision=Definition.revision + 1,
                        updated_at=self.clock(),
                    )
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Definition '{definition_id}' not found")
            return self._reload(session, definition_id)

    def set_enabled(self, definition_id: str, enabled: bool) -> Definition:
        return self.update_metadata(definition_id, enabled=enabled)

    def soft_delete(self, definition_id: str) -> Definition:
        """
        Clear `enabled`, hide the row from readers and release its object keys
        into history so they age out through the GC grace period.
        """
        now = self.clock()
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(Definition)
                    .execution_options(synchronize_session=False)
                    .where(Definition.id == definition_id, Definition.deleted_at.is_(None))
                    .values(
                        enabled=False,
                        deleted_at=now,
                        revision=Definition.revision + 1,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Definition '{definition_id}' not found")
                row = session.get(Definition, definition_id)
                self._record_superseded(session, definition_id, row.object_keys(), now)
            return self._reload(session, definition_id)

    def purge_expired(self, grace_period: timedelta, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Drop history rows and deleted definitions older than grace_period.

        Returns:
            Counts of removed rows, keyed "history" and "definitions"
        """
        cutoff = (now or self.clock()) - grace_period
        with self._session() as session:
            with session.begin():
                history = session.execute(
                    delete(DefinitionObjectHistory)
                    .execution_options(synchronize_session=False)
                    .where(
                        DefinitionObjectHistory.superseded_at < cutoff
                    )
                ).rowcount
                definitions = session.execute(
                    delete(Definition)
                    .execution_options(synchronize_session=False)
                    .where(
                        Definition.deleted_at.is_not(None), Definition.deleted_at < cutoff
                    )
                ).rowcount
        return {"history": history, "definitions": definitions}

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _record_superseded(
        session: Session, definition_id: str, keys: Iterable[str], now: datetime
    ) -> None:
        for key in sorted(k for k in keys if k):
            session.add(
                DefinitionObjectHistory(
                    definition_id=definition_id, object_key=key, superseded_at=now
                )
            )

    @staticmethod
    def _reload(session: Session, definition_id: str) -> Definition:
        row = session.get(Definition, definition_id, populate_existing=True)
        session.expunge(row)
        return row
