"""Storage path building utilities.

Single point of logic for attachment blob paths.

Path Invariant:
    {user_id}/{chat_id}/{epoch_ms}_{random6}.{ext}

Rules:
    - Paths are relative to the storage root, no leading slash
    - Resolved paths must stay inside the storage root
"""

import secrets
import string
import time
from pathlib import Path, PurePosixPath

RANDOM_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
RANDOM_SUFFIX_LENGTH = 6

# Extensions for files produced by image-generating models
GENERATED_FILE_EXTENSIONS: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
DEFAULT_GENERATED_EXTENSION = ".png"


class UnsafePathError(ValueError):
    """Raised when a relative path would escape the storage root."""


def file_extension(file_name: str, default: str = "bin") -> str:
    """Extension of an uploaded file name, without the dot."""
    suffix = PurePosixPath(file_name).suffix.lstrip(".").lower()
    if not suffix or not suffix.isalnum():
        return default
    return suffix


def build_attachment_path(user_id: str, chat_id: str, file_name: str) -> str:
    """Build the relative storage path for a newly uploaded file."""
    stamp = int(time.time() * 1000)
    rand = "".join(secrets.choice(RANDOM_SUFFIX_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
    return f"{user_id}/{chat_id}/{stamp}_{rand}.{file_extension(file_name)}"


def generated_file_name(index: int, mime_type: str, epoch_ms: int | None = None) -> str:
    """Name for the index-th (0-based) file generated by a model."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    ext = GENERATED_FILE_EXTENSIONS.get(mime_type.lower(), DEFAULT_GENERATED_EXTENSION)
    return f"generated-image-{epoch_ms}-{index + 1}{ext}"


def owner_segment(relative_path: str) -> str:
    """First path segment, which is the owning user id."""
    return relative_path.lstrip("/").split("/", 1)[0]


def resolve_storage_path(root: Path, relative_path: str) -> Path:
    """Resolve a relative path under root, refusing anything that escapes it."""
    root = root.resolve()
    candidate = (root / relative_path.lstrip("/")).resolve()
    if candidate != root and root not in candidate.parents:
        raise UnsafePathError(f"Path escapes storage root: {relative_path!r}")
    return candidate
