import logging
from pathlib import Path

from gradeimport.core.errors import StorageError

logger = logging.getLogger(__name__)


class FileBlobStore:
    """Opaque raw-file storage keyed by draft id, one file per key under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        # keys are generated uuid hex tokens, never caller-supplied paths
        if not key.isalnum():
            raise StorageError(f"Invalid blob key {key!r}")
        return self.root / key

    def put(self, key: str, data: bytes) -> str:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._path(key).write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Could not store upload: {exc}") from exc
        return key

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as exc:
            raise StorageError("Uploaded file is no longer available") from exc
        except OSError as exc:
            raise StorageError(f"Could not read upload: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError:
            logger.warning("could not delete blob %s", key, exc_info=True)
