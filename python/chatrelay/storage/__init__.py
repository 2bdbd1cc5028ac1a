"""Blob storage for attachment files.

Provides:
- LocalFileStorage rooted at UPLOAD_DIR, FakeStorageClient for tests
- Path building and root-escape protection
"""

from chatrelay.storage.client import (
    FakeStorageClient,
    LocalFileStorage,
    StorageClientBase,
    StorageError,
    get_storage_client,
)
from chatrelay.storage.paths import (
    build_attachment_path,
    generated_file_name,
    owner_segment,
    resolve_storage_path,
)

__all__ = [
    "StorageClientBase",
    "LocalFileStorage",
    "FakeStorageClient",
    "StorageError",
    "get_storage_client",
    "build_attachment_path",
    "generated_file_name",
    "owner_segment",
    "resolve_storage_path",
]
