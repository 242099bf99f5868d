"""Blob storage for uploaded source files and export artifacts."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from flask import current_app

from .errors import StorageError
from .utils import resolve_artifact_directory


class BlobStorage(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...


class LocalBlobStorage:
    """Stores blobs as files beneath a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    @classmethod
    def from_app(cls, app=None) -> "LocalBlobStorage":
        app = app or current_app
        return cls(resolve_artifact_directory(app))

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise StorageError(f"Storage key '{key}' escapes the storage root.")
        return path

    def put(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to write blob '{key}': {exc}") from exc
        return key

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"Blob '{key}' not found.") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read blob '{key}': {exc}") from exc

    def delete(self, key: str) -> None:
        """Remove a blob, logging but ignoring filesystem errors."""
        try:
            self._path_for(key).unlink(missing_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem race
            current_app.logger.warning("Failed to remove exchange blob %s: %s", key, exc)
