# src/mci_registry/storage/memory.py
import threading
from typing import Dict, Iterator, Optional, Tuple
from datetime import datetime

from mci_registry.clock import Clock, utcnow
from mci_registry.errors import ObjectNotFoundError
from mci_registry.storage.base import ObjectBackend, ObjectInfo


class MemoryBackend(ObjectBackend):
    """In-process backend for development and tests. Thread-safe."""

    name = "memory"

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._objects: Dict[str, Tuple[bytes, datetime]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = (bytes(data), self._clock())

    def get(self, key: str) -> bytes:
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            raise ObjectNotFoundError(key)
        return entry[0]

    def head(self, key: str) -> Optional[ObjectInfo]:
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            return None
        return ObjectInfo(key=key, size=len(entry[0]), last_modified=entry[1])

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        with self._lock:
            snapshot = [
                ObjectInfo(key=k, size=len(v[0]), last_modified=v[1])
                for k, v in self._objects.items()
                if k.startswith(prefix)
            ]
        return iter(sorted(snapshot, key=lambda info: info.key))

    def touch(self, key: str) -> None:
        with self._lock:
            entry = self._objects.get(key)
            if entry is None:
                raise ObjectNotFoundError(key)
            self._objects[key] = (entry[0], self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
