# src/mci_registry/storage/filesystem.py
"""
Local directory backend.

Keys are percent-encoded (':' included) so every key maps to a single,
reversible relative path: definitions/sha256:ab.. -> definitions/sha256%3Aab..
Writes go to a temp file first and are renamed into place, so a reader never
sees a partially written blob.
"""
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote, unquote

from mci_registry.errors import ObjectNotFoundError, ValidationError
from mci_registry.storage.base import ObjectBackend, ObjectInfo


class FilesystemBackend(ObjectBackend):
    name = "filesystem"

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise ValidationError(f"Invalid object key: {key!r}")
        return self.root / quote(key, safe="/")

    def _key_for(self, path: Path) -> str:
        return unquote(path.relative_to(self.root).as_posix())

    @staticmethod
    def _info(key: str, stat: os.stat_result) -> ObjectInfo:
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).replace(
            tzinfo=None
        )
        return ObjectInfo(key=key, size=stat.st_size, last_modified=modified)

    def put(self, key: str, data: bytes) -> None:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes:
        try:
            return self._path_for(key).read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            return self._info(key, self._path_for(key).stat())
        except FileNotFoundError:
            return None

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = self._key_for(path)
            if not key.startswith(prefix):
                continue
            try:
                yield self._info(key, path.stat())
            except FileNotFoundError:
                # Deleted between listing and stat
                continue

    def touch(self, key: str) -> None:
        try:
            os.utime(self._path_for(key))
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None
