# src/mci_registry/services/gc.py
"""
Garbage Collector - deletes blobs no definition references.

An object is collectable only when BOTH hold:
- its key is absent from referenced_keys() (live rows plus history rows
  younger than the grace period), and
- its last_modified is older than the grace period.

The second condition protects blobs written by an in-flight ingestion that
has not committed yet: put() writes or touches the blob before the commit,
so it stays fresh for at least the grace period. The object listing is taken
before the reference snapshot, so anything committed after the listing is
seen as referenced.

A put() can still dedup onto a blob between the last check and the delete.
Both sides therefore check after they write:
- the collector holds the bytes it deletes, re-checks the key afterwards and
  puts the blob back when a commit now references it;
- ingestion re-checks its keys after committing and re-puts any that are gone.
Whichever commit order wins, one of the two sees the other.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List

from mci_registry.clock import Clock, to_naive_utc, utcnow
from mci_registry.db.repository import DefinitionRepository
from mci_registry.digest import NAMESPACES
from mci_registry.errors import ObjectNotFoundError, RegistryError, StoreError
from mci_registry.storage.client import ObjectStoreClient

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    scanned: int = 0
    referenced: int = 0
    too_young: int = 0
    deleted: List[str] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    purged: Dict[str, int] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


class GarbageCollector:
    def __init__(
        self,
        repository: DefinitionRepository,
        store: ObjectStoreClient,
        grace_period: timedelta,
        clock: Clock = utcnow,
    ):
        if grace_period <= timedelta(0):
            raise ValueError("GC grace period must be positive")
        self.repository = repository
        self.store = store
        self.grace_period = grace_period
        self.clock = clock

    def sweep(self) -> SweepReport:
        """
        Run one collection pass. Safe to run while ingestions are in flight.

        Delete failures are logged and counted; the object is retried on the
        next sweep.
        """
        report = SweepReport()
        now = self.clock()
        cutoff = now - self.grace_period

        candidates = []
        for namespace in NAMESPACES.values():
            candidates.extend(self.store.list(f"{namespace}/"))
        report.scanned = len(candidates)

        referenced = self.repository.referenced_keys(self.grace_period, now=now)

        for info in candidates:
            if info.key in referenced:
                report.referenced += 1
                continue
            if to_naive_utc(info.last_modified) >= cutoff:
                report.too_young += 1
                continue

            # Re-check: a concurrent put() may have refreshed it since listing.
            current = self.store.head(info.key)
            if current is None:
                continue
            if to_naive_utc(current.last_modified) >= cutoff:
                report.too_young += 1
                continue

            try:
                data = self.store.get(info.key)
            except ObjectNotFoundError:
                continue
            except StoreError as e:
                report.failed.append(info.key)
                logger.warning(f"GC could not read {info.key} before deleting: {e}")
                continue

            if not self.store.delete(info.key):
                report.failed.append(info.key)
                logger.warning(f"GC could not delete {info.key}; will retry next sweep")
                continue

            restore = True
            try:
                restore = self.repository.is_referenced(
                    info.key, self.grace_period, now=self.clock()
                )
            finally:
                if restore:
                    self._restore(info.key, data, report)
            if not restore:
                report.deleted.append(info.key)
                logger.info(f"GC deleted {info.key}")

        report.purged = self.repository.purge_expired(self.grace_period, now=now)

        logger.info(
            f"GC sweep: scanned={report.scanned} referenced={report.referenced} "
            f"young={report.too_young} deleted={report.deleted_count} "
            f"restored={len(report.restored)} failed={len(report.failed)} "
            f"purged={report.purged}"
        )
        return report

    def _restore(self, key: str, data: bytes, report: SweepReport) -> None:
        try:
            self.store.put(key, data)
        except RegistryError as e:
            report.failed.append(key)
            logger.error(f"GC could not restore {key} after a concurrent commit: {e}")
            return
        report.restored.append(key)
        logger.warning(f"GC restored {key}: a commit referenced it during deletion")


class GCThread(threading.Thread):
    """Runs sweeps on an interval until stop() is called."""

    def __init__(self, collector: GarbageCollector, interval: float):
        super().__init__(daemon=True, name="mci-gc")
        self.collector = collector
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        logger.info(f"GC loop started (every {self.interval}s)")
        while not self._stop_event.is_set():
            try:
                self.collector.sweep()
            except RegistryError as e:
                logger.error(f"GC sweep failed: {e}")
            except Exception:
                logger.exception("GC sweep crashed")
            self._stop_event.wait(self.interval)
        logger.info("GC loop stopped")

    def stop(self, timeout: float = None) -> None:
        self._stop_event.set()
        self.join(timeout)
