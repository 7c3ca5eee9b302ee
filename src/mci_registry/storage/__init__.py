# src/mci_registry/storage/__init__.py
"""
Content-addressed object storage.

Backends: memory (dev/tests), filesystem, s3 (boto3).
"""
from pathlib import Path

from mci_registry.storage.base import ObjectBackend, ObjectInfo
from mci_registry.storage.client import ObjectStoreClient
from mci_registry.storage.filesystem import FilesystemBackend
from mci_registry.storage.memory import MemoryBackend


def create_backend(store_settings) -> ObjectBackend:
    """Build the backend named by the object_store settings section."""
    match store_settings.type:
        case "memory":
            return MemoryBackend()
        case "filesystem":
            return FilesystemBackend(Path(store_settings.root))
        case "s3":
            from mci_registry.storage.s3 import S3Backend, create_client

            client = create_client(
                endpoint_url=store_settings.endpoint_url,
                region=store_settings.region,
                access_key=store_settings.access_key,
                secret_key=store_settings.secret_key,
                force_path_style=store_settings.force_path_style,
                connect_timeout=store_settings.connect_timeout_seconds,
                read_timeout=store_settings.read_timeout_seconds,
            )
            return S3Backend(client, store_settings.bucket)
        case _:
            raise ValueError(f"Unsupported object store type: {store_settings.type}")


__all__ = [
    "ObjectBackend",
    "ObjectInfo",
    "ObjectStoreClient",
    "FilesystemBackend",
    "MemoryBackend",
    "create_backend",
]
