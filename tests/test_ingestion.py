"""
Tests for the ingestion state machine: fetch -> verify -> store -> commit.
"""
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mci_registry import digest as digests
from mci_registry.errors import (
    ConflictError,
    FetchError,
    IntegrityError,
    ObjectNotFoundError,
    StoreError,
    ValidationError,
)
from mci_registry.schemas import IngestRequest
from mci_registry.services.ingestion import IngestionEngine, IngestionState
from mci_registry.storage import MemoryBackend, ObjectStoreClient

PAYLOAD = b'{"kind": "connector", "transport": {"protocol": "http"}}'
PAYLOAD_V2 = b'{"kind": "connector", "transport": {"protocol": "https"}}'
FULL_PATH = ["PENDING", "FETCHING", "VERIFYING", "STORING", "COMMITTING", "ACTIVE"]


class TestCreateAndUpdate:
    def test_create_scenario(self, ingestion, query, definition_fields):
        """Create conn-http and read back exactly the committed fields."""
        result = ingestion.submit(**definition_fields, payload=PAYLOAD)

        expected_digest = digests.compute(PAYLOAD)
        view = result.definition
        assert result.changed is True
        assert result.states == FULL_PATH
        assert view.digest == expected_digest
        assert view.definition_object_key == "definitions/" + expected_digest
        assert view.enabled is False
        assert view.revision == 1

        fetched = query.get("conn-http")
        assert fetched.model_dump() == view.model_dump()
        assert fetched.type == "connector"
        assert fetched.name == "HTTP Connector"

    def test_update_scenario_old_blob_reclaimed_after_grace(
        self, ingestion, store, collector, clock, definition_fields
    ):
        old = ingestion.submit(**definition_fields, payload=PAYLOAD).definition
        new = ingestion.submit(**definition_fields, payload=PAYLOAD_V2).definition

        assert new.digest == digests.compute(PAYLOAD_V2)
        assert new.definition_object_key != old.definition_object_key
        assert new.revision == 2

        # Old key stays retrievable inside the grace period.
        collector.sweep()
        assert store.get(old.definition_object_key) == PAYLOAD

        clock.advance(hours=2)
        report = collector.sweep()
        assert old.definition_object_key in report.deleted
        with pytest.raises(ObjectNotFoundError):
            store.get(old.definition_object_key)
        assert store.get_verified(new.definition_object_key, new.digest) == PAYLOAD_V2

    def test_expected_digest_mismatch_changes_nothing(
        self, ingestion, repository, memory_backend, definition_fields
    ):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        before = repository.get("conn-http")
        blobs_before = sorted(i.key for i in memory_backend.list())

        with pytest.raises(IntegrityError):
            ingestion.submit(
                **definition_fields,
                payload=PAYLOAD_V2,
                expected_digest=digests.compute(b"something else"),
            )

        after = repository.get("conn-http")
        assert (after.digest, after.revision, after.updated_at) == (
            before.digest,
            before.revision,
            before.updated_at,
        )
        assert sorted(i.key for i in memory_backend.list()) == blobs_before

    def test_matching_expected_digest_is_accepted(self, ingestion, definition_fields):
        result = ingestion.submit(
            **definition_fields, payload=PAYLOAD, expected_digest=digests.compute(PAYLOAD)
        )
        assert result.definition.digest == digests.compute(PAYLOAD)

    def test_empty_payload_is_valid(self, ingestion, query, definition_fields):
        result = ingestion.submit(**definition_fields, payload=b"")
        assert result.definition.digest == digests.compute(b"")
        assert query.read_payload("conn-http", "definition") == b""


class TestIdempotency:
    def test_identical_reingest_is_noop(self, ingestion, memory_backend, definition_fields):
        first = ingestion.submit(**definition_fields, payload=PAYLOAD)
        second = ingestion.submit(**definition_fields, payload=PAYLOAD)

        assert second.changed is False
        assert second.states == FULL_PATH
        assert second.definition.digest == first.definition.digest
        assert second.definition.definition_object_key == first.definition.definition_object_key
        assert second.definition.revision == first.definition.revision
        assert len(memory_backend) == 1

    def test_metadata_change_commits_without_new_blob(
        self, ingestion, memory_backend, definition_fields
    ):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        renamed = dict(definition_fields, name="HTTP Connector v2")
        result = ingestion.submit(**renamed, payload=PAYLOAD)
        assert result.changed is True
        assert result.definition.revision == 2
        assert len(memory_backend) == 1

    def test_identical_content_across_ids_shares_blob(self, ingestion, memory_backend, definition_fields):
        a = ingestion.submit(**definition_fields, payload=PAYLOAD).definition
        b = ingestion.submit(**dict(definition_fields, id="conn-http-copy"), payload=PAYLOAD).definition
        assert a.definition_object_key == b.definition_object_key
        assert len(memory_backend) == 1


class TestFailures:
    def test_store_failure_leaves_active_row(self, repository, fetcher, definition_fields):
        class DownBackend(MemoryBackend):
            broken = False

            def put(self, key, data):
                if self.broken:
                    raise ConnectionError("object store unreachable")
                super().put(key, data)

        backend = DownBackend()
        store = ObjectStoreClient(
            backend, max_attempts=2, backoff_initial_seconds=0, backoff_max_seconds=0
        )
        engine = IngestionEngine(repository, store, fetcher)
        engine.submit(**definition_fields, payload=PAYLOAD)
        before = repository.get("conn-http")

        backend.broken = True
        with pytest.raises(StoreError):
            engine.submit(**definition_fields, payload=PAYLOAD_V2)

        after = repository.get("conn-http")
        assert after.digest == before.digest
        assert after.revision == before.revision

    def test_fetch_failure(self, ingestion, repository, fake_http, definition_fields):
        url = "https://defs.example.com/conn-http.json"
        fake_http.add(url, (404, b"gone"))
        with pytest.raises(FetchError):
            ingestion.submit(**definition_fields, source_url=url)
        assert repository.get("conn-http") is None

    def test_failure_states_are_logged(self, ingestion, caplog, definition_fields):
        with caplog.at_level(logging.WARNING, logger="mci_registry.services.ingestion"):
            with pytest.raises(IntegrityError):
                ingestion.submit(
                    **definition_fields,
                    payload=PAYLOAD,
                    expected_digest=digests.compute(PAYLOAD_V2),
                )
        assert IngestionState.DIGEST_MISMATCH.value in caplog.text

    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": "x"},
            {"id": "bad id!"},
            {"type": "has space"},
            {"name": "ab"},
            {"description": "d" * 301},
            {"expected_digest": "sha256:XYZ"},
        ],
    )
    def test_invalid_requests(self, ingestion, definition_fields, overrides):
        with pytest.raises(ValidationError):
            ingestion.submit(**dict(definition_fields, **overrides), payload=PAYLOAD)

    def test_payload_and_source_are_exclusive(self, ingestion, definition_fields):
        with pytest.raises(ValidationError):
            ingestion.submit(**definition_fields)
        with pytest.raises(ValidationError):
            ingestion.submit(**definition_fields, payload=PAYLOAD, source_url="/tmp/x")


class TestSources:
    def test_http_source_with_transient_failure(
        self, ingestion, fake_http, query, definition_fields
    ):
        url = "https://defs.example.com/conn-http.json"
        fake_http.add(url, (503, b"busy"), (200, PAYLOAD))

        result = ingestion.submit(**definition_fields, source_url=url)

        assert result.definition.digest == digests.compute(PAYLOAD)
        assert result.definition.source_url == url
        assert fake_http.count(url) == 2
        assert fake_http.requests[0].headers["User-Agent"] == "MCI/1.0"
        assert query.read_payload("conn-http", "definition") == PAYLOAD

    def test_resync_from_file(self, ingestion, tmp_path, definition_fields):
        source = tmp_path / "conn-http.json"
        source.write_bytes(PAYLOAD)
        created = ingestion.submit(**definition_fields, source_url=str(source))

        unchanged = ingestion.resync("conn-http")
        assert unchanged.changed is False
        assert unchanged.definition.revision == created.definition.revision

        source.write_bytes(PAYLOAD_V2)
        updated = ingestion.resync("conn-http")
        assert updated.changed is True
        assert updated.definition.digest == digests.compute(PAYLOAD_V2)
        assert updated.definition.source_url == str(source)

    def test_resync_requires_source(self, ingestion, definition_fields):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        with pytest.raises(ValidationError):
            ingestion.resync("conn-http")

    def test_install_from_manifest(self, ingestion, fake_http):
        manifest_url = "https://hub.example.com/manifests/conn-http.json"
        file_url = "https://hub.example.com/files/conn-http.json"
        manifest = {
            "id": "conn-http",
            "type": "connector",
            "name": "HTTP Connector",
            "description": "From the hub",
            "file_url": file_url,
            "digest": digests.compute(PAYLOAD),
            "homepage": "ignored",
        }
        fake_http.add(manifest_url, (200, json.dumps(manifest).encode()))
        fake_http.add(file_url, (200, PAYLOAD))

        view = ingestion.install(manifest_url).definition
        assert view.id == "conn-http"
        assert view.description == "From the hub"
        assert view.source_url == file_url
        assert view.digest == digests.compute(PAYLOAD)

    def test_install_rejects_tampered_file(self, ingestion, repository, fake_http):
        manifest_url = "https://hub.example.com/manifests/conn-http.json"
        file_url = "https://hub.example.com/files/conn-http.json"
        manifest = {
            "id": "conn-http",
            "type": "connector",
            "name": "HTTP Connector",
            "file_url": file_url,
            "digest": digests.compute(PAYLOAD),
        }
        fake_http.add(manifest_url, (200, json.dumps(manifest).encode()))
        fake_http.add(file_url, (200, b"tampered"))

        with pytest.raises(IntegrityError):
            ingestion.install(manifest_url)
        assert repository.get("conn-http") is None


class TestConfigurationAndSecrets:
    def test_payload_kinds_use_separate_namespaces(
        self, ingestion, repository, definition_fields
    ):
        result = ingestion.submit(
            **definition_fields,
            payload=PAYLOAD,
            configuration=b"timeout: 30",
            secrets=b"token=abc123",
        )
        view = result.definition
        row = repository.get("conn-http")

        assert view.has_secrets is True
        assert view.configuration_object_key == "configurations/" + digests.compute(b"timeout: 30")
        assert row.secrets_object_key == "secrets/" + digests.compute(b"token=abc123")
        assert "secrets_object_key" not in view.model_dump()
        assert "secrets_digest" not in view.model_dump()

    def test_omitted_payloads_are_kept_and_clear_flags_drop_them(
        self, ingestion, repository, definition_fields
    ):
        ingestion.submit(
            **definition_fields, payload=PAYLOAD, configuration=b"cfg", secrets=b"s"
        )
        kept = ingestion.submit(**definition_fields, payload=PAYLOAD_V2).definition
        assert kept.configuration_digest == digests.compute(b"cfg")
        assert kept.has_secrets

        cleared = ingestion.submit(
            **definition_fields, payload=PAYLOAD_V2, clear_configuration=True, clear_secrets=True
        ).definition
        assert cleared.configuration_object_key is None
        assert cleared.has_secrets is False
        assert repository.get("conn-http").secrets_digest is None

    def test_secrets_never_logged(self, ingestion, caplog, definition_fields):
        secret = b"super-secret-token-9f8e7d"
        with caplog.at_level(logging.DEBUG):
            ingestion.submit(**definition_fields, payload=PAYLOAD, secrets=secret)
            with pytest.raises(IntegrityError):
                ingestion.submit(
                    **definition_fields,
                    payload=PAYLOAD,
                    secrets=secret,
                    expected_digest=digests.compute(b"nope"),
                )
        assert secret.decode() not in caplog.text

    def test_secrets_masked_in_repr(self, definition_fields):
        request = IngestRequest(**definition_fields, payload=PAYLOAD, secrets=b"hunter2")
        assert "hunter2" not in repr(request)


class TestEnabledFlag:
    def test_enabled_survives_content_update(self, ingestion, lifecycle, definition_fields):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        lifecycle.enable("conn-http")
        updated = ingestion.submit(**definition_fields, payload=PAYLOAD_V2).definition
        assert updated.enabled is True

    def test_explicit_enabled_on_create(self, ingestion, definition_fields):
        view = ingestion.submit(**definition_fields, payload=PAYLOAD, enabled=True).definition
        assert view.enabled is True

    def test_recreate_after_delete(self, ingestion, lifecycle, query, definition_fields):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        lifecycle.delete("conn-http")
        recreated = ingestion.submit(**definition_fields, payload=PAYLOAD).definition
        assert recreated.revision == 3
        assert recreated.enabled is False
        assert query.get("conn-http").digest == digests.compute(PAYLOAD)


class TestConcurrency:
    def test_prior_digest_mismatch_conflicts_before_side_effects(
        self, ingestion, memory_backend, caplog, definition_fields
    ):
        ingestion.submit(**definition_fields, payload=PAYLOAD)
        caplog.clear()
        with caplog.at_level(logging.DEBUG, logger="mci_registry.services.ingestion"):
            with pytest.raises(ConflictError):
                ingestion.submit(
                    **definition_fields,
                    payload=PAYLOAD_V2,
                    expected_prior_digest=digests.compute(b"stale"),
                )
        assert len(memory_backend) == 1
        assert "rejected" in caplog.text
        assert IngestionState.FETCH_FAILED.value not in caplog.text
        assert IngestionState.FETCHING.value not in caplog.text

    def test_commit_race_has_one_winner(self, repository, store, fetcher, definition_fields):
        """A commit that lands between snapshot and commit wins; the slower run conflicts."""
        engine = IngestionEngine(repository, store, fetcher)
        engine.submit(**definition_fields, payload=PAYLOAD)

        class RacingStore(ObjectStoreClient):
            raced = False

            def put(self, key, data):
                created = super().put(key, data)
                if not self.raced:
                    self.raced = True
                    engine.submit(**definition_fields, payload=b"concurrent winner")
                return created

        racing = IngestionEngine(
            repository,
            RacingStore(store.backend, max_attempts=1),
            fetcher,
        )
        with pytest.raises(ConflictError):
            racing.submit(**definition_fields, payload=PAYLOAD_V2)
        assert repository.get("conn-http").digest == digests.compute(b"concurrent winner")

    def test_parallel_same_id_exactly_one_wins(
        self, ingestion, repository, store, definition_fields
    ):
        base = ingestion.submit(**definition_fields, payload=PAYLOAD).definition
        barrier = threading.Barrier(6)

        def attempt(i):
            barrier.wait()
            try:
                ingestion.submit(
                    **definition_fields,
                    payload=f"variant-{i}".encode(),
                    expected_prior_digest=base.digest,
                )
                return "ok"
            except ConflictError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(6)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 5
        row = repository.get("conn-http")
        assert row.revision == 2
        assert digests.matches(store.get(row.definition_object_key), row.digest)

    def test_parallel_distinct_ids_all_commit(self, ingestion, query, definition_fields):
        def create(i):
            return ingestion.submit(
                **dict(definition_fields, id=f"conn-{i:03d}"), payload=f"p{i}".encode()
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(create, range(16)))

        assert all(r.changed for r in results)
        assert len(query.list()) == 16
