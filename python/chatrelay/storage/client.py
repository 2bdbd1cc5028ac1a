"""Blob storage client abstraction.

Attachments are stored as opaque relative paths. The pipeline only needs
save/read/delete; delete is best-effort and never raises into the caller.

Implementations:
- LocalFileStorage: files under a root directory (UPLOAD_DIR)
- FakeStorageClient: in-memory, for tests
"""

from abc import ABC, abstractmethod
from pathlib import Path

from chatrelay.config import get_settings
from chatrelay.logging import get_logger
from chatrelay.storage.paths import UnsafePathError, build_attachment_path, resolve_storage_path

logger = get_logger(__name__)


class StorageError(Exception):
    """Raised when a blob cannot be written or read."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class StorageClientBase(ABC):
    """Abstract base class for storage client implementations."""

    @abstractmethod
    def put_object(self, path: str, content: bytes) -> None:
        """Write bytes at a relative path, creating parents as needed.

        Raises:
            StorageError: If the write fails or the path is unsafe.
        """
        ...

    @abstractmethod
    def get_object(self, path: str) -> bytes:
        """Read the bytes stored at a relative path.

        Raises:
            StorageError: If the object is missing or unreadable.
        """
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def delete_object(self, path: str) -> None:
        """Delete an object. Best-effort: logs errors, never raises."""
        ...

    def save(self, content: bytes, user_id: str, chat_id: str, file_name: str) -> str:
        """Store an upload under a fresh path and return that path."""
        path = build_attachment_path(user_id, chat_id, file_name)
        self.put_object(path, content)
        return path


class LocalFileStorage(StorageClientBase):
    """Stores blobs as files below a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def full_path(self, path: str) -> Path:
        """Absolute filesystem path for a relative storage path.

        Raises:
            StorageError: If the path escapes the root.
        """
        try:
            return resolve_storage_path(self.root, path)
        except UnsafePathError as e:
            raise StorageError(str(e)) from e

    def put_object(self, path: str, content: bytes) -> None:
        target = self.full_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def get_object(self, path: str) -> bytes:
        target = self.full_path(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {path}", code="E_FILE_NOT_FOUND") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def exists(self, path: str) -> bool:
        try:
            return self.full_path(path).is_file()
        except StorageError:
            return False

    def delete_object(self, path: str) -> None:
        try:
            self.full_path(path).unlink(missing_ok=True)
        except (StorageError, OSError) as e:
            logger.warning("storage_delete_failed", path=path, error=str(e))


class FakeStorageClient(StorageClientBase):
    """In-memory storage for tests."""

    def __init__(self):
        self._objects: dict[str, bytes] = {}
        self.deleted: list[str] = []

    def put_object(self, path: str, content: bytes) -> None:
        self._objects[path] = content

    def get_object(self, path: str) -> bytes:
        if path not in self._objects:
            raise StorageError(f"Object not found: {path}", code="E_FILE_NOT_FOUND")
        return self._objects[path]

    def exists(self, path: str) -> bool:
        return path in self._objects

    def delete_object(self, path: str) -> None:
        self.deleted.append(path)
        self._objects.pop(path, None)

    @property
    def paths(self) -> list[str]:
        return sorted(self._objects)


def get_storage_client() -> StorageClientBase:
    """Build the storage client from settings."""
    return LocalFileStorage(get_settings().upload_dir)
