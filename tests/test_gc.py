"""
Tests for the grace-period garbage collector.
"""
import threading
import time
from datetime import timedelta

import pytest

from mci_registry import digest as digests
from mci_registry.digest import PayloadKind
from mci_registry.services.gc import GarbageCollector, GCThread, SweepReport
from mci_registry.services.ingestion import IngestionEngine
from mci_registry.storage import MemoryBackend, ObjectStoreClient

PAYLOAD = b"definition v1"
PAYLOAD_V2 = b"definition v2"


def orphan(store, data: bytes, kind: PayloadKind = PayloadKind.DEFINITION) -> str:
    """Write a blob no definition references."""
    return store.put_payload(kind, data)[1]


class TestSweep:
    def test_live_keys_never_collected(self, ingestion, collector, store, clock, definition_fields):
        view = ingestion.submit(
            **definition_fields, payload=PAYLOAD, configuration=b"cfg", secrets=b"sec"
        ).definition
        clock.advance(days=30)

        report = collector.sweep()

        assert report.deleted == []
        assert report.referenced == 3
        assert store.get_verified(view.definition_object_key, view.digest) == PAYLOAD

    def test_young_orphan_survives_until_grace_elapses(self, collector, store, clock):
        key = orphan(store, b"written by an ingestion that has not committed yet")

        report = collector.sweep()
        assert report.too_young == 1
        assert store.exists(key)

        clock.advance(minutes=61)
        report = collector.sweep()
        assert report.deleted == [key]
        assert not store.exists(key)

    def test_dedup_reuse_refreshes_orphan(self, collector, store, clock):
        """A stale orphan re-put by a new ingestion is fresh again."""
        key = orphan(store, PAYLOAD)
        clock.advance(hours=5)
        store.put(key, PAYLOAD)

        assert collector.sweep().deleted == []
        assert store.exists(key)

    def test_all_namespaces_are_swept(self, collector, store, clock):
        keys = {
            orphan(store, b"d", PayloadKind.DEFINITION),
            orphan(store, b"c", PayloadKind.CONFIGURATION),
            orphan(store, b"s", PayloadKind.SECRETS),
        }
        clock.advance(hours=2)
        assert set(collector.sweep().deleted) == keys

    def test_foreign_prefixes_are_ignored(self, collector, memory_backend, clock):
        memory_backend.put("exports/report.csv", b"not ours")
        clock.advance(days=1)
        collector.sweep()
        assert memory_backend.head("exports/report.csv") is not None

    def test_deleted_definition_reclaimed_after_grace(
        self, ingestion, lifecycle, collector, repository, store, clock, definition_fields
    ):
        view = ingestion.submit(**definition_fields, payload=PAYLOAD).definition
        lifecycle.delete("conn-http")

        clock.advance(minutes=30)
        assert collector.sweep().deleted == []
        assert store.exists(view.definition_object_key)

        clock.advance(hours=1)
        report = collector.sweep()
        assert report.deleted == [view.definition_object_key]
        assert report.purged == {"history": 1, "definitions": 1}
        assert repository.get("conn-http", include_deleted=True) is None

    def test_sweep_is_idempotent(self, collector, store, clock):
        orphan(store, b"once")
        clock.advance(hours=2)
        assert collector.sweep().deleted_count == 1
        second = collector.sweep()
        assert second.deleted_count == 0
        assert second.scanned == 0

    def test_failed_delete_retried_next_sweep(self, repository, clock):
        class StickyBackend(MemoryBackend):
            fail = True

            def delete(self, key):
                if self.fail:
                    raise ConnectionError("delete timed out")
                super().delete(key)

        backend = StickyBackend(clock=clock)
        store = ObjectStoreClient(
            backend, max_attempts=2, backoff_initial_seconds=0, backoff_max_seconds=0
        )
        gc = GarbageCollector(repository, store, grace_period=timedelta(hours=1), clock=clock)
        key = orphan(store, b"sticky")
        clock.advance(hours=2)

        report = gc.sweep()
        assert report.failed == [key]
        assert store.exists(key)

        backend.fail = False
        assert gc.sweep().deleted == [key]

    def test_grace_period_must_be_positive(self, repository, store):
        with pytest.raises(ValueError):
            GarbageCollector(repository, store, grace_period=timedelta(0))


class TestInterleavings:
    """Collection interleaved with in-flight ingestion never loses a needed blob."""

    def test_sweep_between_store_and_commit(
        self, repository, store, fetcher, collector, clock, definition_fields
    ):
        old_engine = IngestionEngine(repository, store, fetcher)
        old_engine.submit(**definition_fields, payload=PAYLOAD_V2)
        # PAYLOAD's blob exists from long ago, unreferenced.
        stale_key = orphan(store, PAYLOAD)
        clock.advance(hours=3)

        class SweepingStore(ObjectStoreClient):
            def put(self, key, data):
                created = super().put(key, data)
                collector.sweep()
                return created

        engine = IngestionEngine(
            repository,
            SweepingStore(store.backend, max_attempts=1),
            fetcher,
        )
        view = engine.submit(**definition_fields, payload=PAYLOAD).definition

        assert view.definition_object_key == stale_key
        assert store.get_verified(view.definition_object_key, view.digest) == PAYLOAD

    def test_sweep_between_snapshot_and_listing(
        self, ingestion, repository, store, clock, definition_fields
    ):
        """A commit landing after the object listing is treated as referenced."""
        key = orphan(store, PAYLOAD)
        clock.advance(hours=3)

        class CommitDuringSweep(type(repository)):
            def referenced_keys(self, grace_period, now=None):
                if not repository.get("conn-http"):
                    ingestion.submit(**definition_fields, payload=PAYLOAD)
                return super().referenced_keys(grace_period, now=now)

        racing_repo = CommitDuringSweep(repository.engine, clock=clock)
        gc = GarbageCollector(racing_repo, store, grace_period=timedelta(hours=1), clock=clock)

        report = gc.sweep()
        assert key not in report.deleted
        assert store.get(key) == PAYLOAD

    def test_commit_during_delete_restores_blob(
        self, ingestion, repository, store, collector, clock, definition_fields
    ):
        """A dedup commit landing between the GC's checks and its delete is put back."""
        key = orphan(store, PAYLOAD)
        clock.advance(hours=2)

        class CommitDuringDelete(ObjectStoreClient):
            def delete(self, key):
                ingestion.submit(**definition_fields, payload=PAYLOAD)
                return super().delete(key)

        gc = GarbageCollector(
            repository,
            CommitDuringDelete(store.backend, max_attempts=1),
            grace_period=timedelta(hours=1),
            clock=clock,
        )
        report = gc.sweep()

        assert report.deleted == []
        assert report.restored == [key]
        row = repository.get("conn-http")
        assert row.definition_object_key == key
        assert store.get_verified(row.definition_object_key, row.digest) == PAYLOAD

        clock.advance(hours=2)
        assert collector.sweep().deleted == []
        assert store.exists(key)

    def test_delete_between_put_and_commit_is_repaired(
        self, repository, store, fetcher, clock, definition_fields
    ):
        """Ingestion re-stores a deduplicated blob that was collected before its commit."""
        key = orphan(store, PAYLOAD)
        clock.advance(hours=2)

        class CollectedAfterPut(ObjectStoreClient):
            collected = []

            def put(self, key, data):
                created = super().put(key, data)
                if not self.collected:
                    self.backend.delete(key)
                    self.collected.append(key)
                return created

        engine = IngestionEngine(
            repository, CollectedAfterPut(store.backend, max_attempts=1), fetcher
        )
        view = engine.submit(**definition_fields, payload=PAYLOAD).definition

        assert CollectedAfterPut.collected == [key]
        assert view.definition_object_key == key
        assert store.get_verified(key, view.digest) == PAYLOAD

    def test_concurrent_ingestion_and_sweeps(self, ingestion, collector, query, store, clock):
        stop = threading.Event()
        errors = []

        def sweeper():
            while not stop.is_set():
                try:
                    collector.sweep()
                except Exception as e:  # surfaced by the assertion below
                    errors.append(e)

        thread = threading.Thread(target=sweeper)
        thread.start()
        try:
            for round_no in range(5):
                for i in range(4):
                    ingestion.submit(
                        id=f"conn-{i}",
                        type="connector",
                        name=f"Connector {i}",
                        payload=f"conn-{i} round {round_no}".encode(),
                    )
                clock.advance(minutes=20)
        finally:
            stop.set()
            thread.join(timeout=30)

        assert errors == []
        for view in query.list():
            data = store.get(view.definition_object_key)
            assert digests.compute(data) == view.digest


class TestGCThread:
    def test_runs_until_stopped(self):
        swept = threading.Event()

        class CountingCollector:
            calls = 0

            def sweep(self):
                self.calls += 1
                swept.set()
                return SweepReport()

        collector = CountingCollector()
        thread = GCThread(collector, interval=0.01)
        thread.start()
        assert swept.wait(timeout=5)
        thread.stop(timeout=5)
        assert not thread.is_alive()
        assert collector.calls >= 1

    def test_survives_sweep_errors(self):
        calls = []

        class FailingCollector:
            def sweep(self):
                calls.append(1)
                raise RuntimeError("database went away")

        thread = GCThread(FailingCollector(), interval=0.01)
        thread.start()
        for _ in range(500):
            if len(calls) >= 2:
                break
            time.sleep(0.01)
        thread.stop(timeout=5)
        assert len(calls) >= 2
