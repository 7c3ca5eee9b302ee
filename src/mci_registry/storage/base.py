# src/mci_registry/storage/base.py
"""
Blob backend interface.

Backends are dumb key/value stores. Content addressing, idempotency and
retries live in ObjectStoreClient; backends only translate calls to their
storage and raise ObjectNotFoundError for missing keys. Any other exception
a backend raises is treated as transient.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: datetime  # naive UTC


class ObjectBackend(ABC):
    name = "abstract"

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Write bytes under key, replacing nothing that differs."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes under key or raise ObjectNotFoundError."""

    @abstractmethod
    def head(self, key: str) -> Optional[ObjectInfo]:
        """Return object info, or None when the key is absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is not an error."""

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        """Yield every object whose key starts with prefix."""

    @abstractmethod
    def touch(self, key: str) -> None:
        """Refresh last_modified without changing content."""

    def close(self) -> None:
        pass
