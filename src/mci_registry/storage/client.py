# src/mci_registry/storage/client.py
"""
Object Store Client - content-addressed put/get/delete over a backend.

Guarantees:
- put() is idempotent: an existing key is only touched (last_modified bumped)
  so a deduplicated blob looks freshly referenced to the garbage collector.
- Keys are content-addressed; bytes that do not hash to the key's digest are
  rejected with KeyCollisionError before any I/O.
- Backend failures are retried with bounded exponential backoff; exhaustion
  raises StoreError chained to the last backend error.
"""
import logging
from typing import Callable, Iterator, Optional, Tuple, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mci_registry import digest as digests
from mci_registry.digest import PayloadKind
from mci_registry.errors import (
    IntegrityError,
    KeyCollisionError,
    ObjectNotFoundError,
    RegistryError,
    StoreError,
)
from mci_registry.storage.base import ObjectBackend, ObjectInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Registry errors (not found, collisions, validation) are final."""
    return not isinstance(exc, RegistryError)


class ObjectStoreClient:
    def __init__(
        self,
        backend: ObjectBackend,
        max_attempts: int = 4,
        backoff_initial_seconds: float = 0.2,
        backoff_max_seconds: float = 5.0,
    ):
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_initial_seconds = backoff_initial_seconds
        self.backoff_max_seconds = backoff_max_seconds

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_initial_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _call(self, operation: str, key: str, fn: Callable[[], T]) -> T:
        try:
            for attempt in self._retrying():
                with attempt:
                    return fn()
        except RegistryError:
            raise
        except Exception as e:
            logger.error(
                f"Object store {operation} failed for {key} "
                f"after {self.max_attempts} attempts: {e}"
            )
            raise StoreError(
                f"Object store {operation} failed for {key}: {type(e).__name__}"
            ) from e

    # --- Writes ---

    def put(self, key: str, data: bytes) -> bool:
        """
        Store bytes under a content-addressed key.

        Returns:
            True if a new blob was written, False if it already existed

        Raises:
            KeyCollisionError: data does not hash to the digest in key
            StoreError: retry budget exhausted
        """
        expected = digests.digest_from_key(key)
        if not digests.matches(data, expected):
            raise KeyCollisionError(f"Content does not match content-addressed key {key}")

        def _write() -> bool:
            if self.backend.head(key) is not None:
                try:
                    self.backend.touch(key)
                    return False
                except ObjectNotFoundError:
                    # Collected between head and touch; write it again.
                    pass
            self.backend.put(key, data)
            return True

        created = self._call("put", key, _write)
        logger.debug(f"put {key} ({'written' if created else 'deduplicated'})")
        return created

    def put_payload(self, kind: PayloadKind, data: bytes) -> Tuple[str, str]:
        """Hash, derive the key, and store. Returns (digest, key)."""
        payload_digest = digests.compute(data)
        key = digests.object_key(kind, payload_digest)
        self.put(key, data)
        return payload_digest, key

    # --- Reads ---

    def get(self, key: str) -> bytes:
        """
        Raises:
            ObjectNotFoundError: nothing stored under key
            StoreError: retry budget exhausted
        """
        return self._call("get", key, lambda: self.backend.get(key))

    def get_verified(self, key: str, expected_digest: str) -> bytes:
        """Fetch a blob and check it still hashes to expected_digest."""
        data = self.get(key)
        if not digests.matches(data, expected_digest):
            logger.error(f"Stored object {key} does not match digest {expected_digest}")
            raise IntegrityError(f"Stored object {key} is corrupt")
        return data

    def head(self, key: str) -> Optional[ObjectInfo]:
        return self._call("head", key, lambda: self.backend.head(key))

    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        # Listing is materialized inside the retry so a failed page restarts cleanly.
        return iter(self._call("list", prefix or "*", lambda: list(self.backend.list(prefix))))

    # --- Deletes (garbage collector only) ---

    def delete(self, key: str) -> bool:
        """Best-effort delete. Returns False instead of raising on failure."""
        try:
            self._call("delete", key, lambda: self.backend.delete(key))
            return True
        except StoreError:
            return False

    def close(self) -> None:
        self.backend.close()
