"""
Shared helpers for the exchange package: feature switches read from the Flask
config, blob locations and keys, and JSON-safe payload conversion.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4

from flask import current_app
from werkzeug.utils import secure_filename

DEFAULT_ARTIFACT_SUBDIR = "exchange_artifacts"
DEFAULT_MAX_UPLOAD_MB = 25


def _config(app=None):
    return (app or current_app).config


def is_exchange_enabled(app=None) -> bool:
    """Return True when the exchange feature flag is enabled."""
    return bool(_config(app).get("EXCHANGE_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    """Return True when jobs should be queued to the Celery worker."""
    return bool(_config(app).get("EXCHANGE_WORKER_ENABLED", False))


def dispatch_mode(app=None) -> str:
    return "celery worker" if is_worker_enabled(app) else "inline"


def max_upload_bytes(app=None) -> int:
    return int(_config(app).get("EXCHANGE_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * 1024 * 1024


def resolve_artifact_directory(app) -> Path:
    """
    Return the directory holding uploads and export artifacts, creating it.

    ``EXCHANGE_ARTIFACT_DIR`` may be absolute or relative to the instance
    folder; without it the directory lives under the instance folder.
    """
    configured = app.config.get("EXCHANGE_ARTIFACT_DIR")
    if not configured:
        directory = Path(app.instance_path) / DEFAULT_ARTIFACT_SUBDIR
    elif Path(configured).is_absolute():
        directory = Path(configured)
    else:
        directory = Path(app.instance_path) / configured
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def build_storage_key(prefix: str, filename: str | None, *, default_extension: str = ".csv") -> str:
    """
    Return a collision-free blob key such as ``imports/<uuid>.csv``.

    The original extension is kept when the filename carries one.
    """
    original_name = secure_filename(filename or "")
    extension = Path(original_name).suffix.lower() if original_name else ""
    if not extension:
        extension = default_extension if default_extension.startswith(".") else f".{default_extension}"
    return f"{prefix.strip('/')}/{uuid4().hex}{extension}"


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _to_json_value(inner) for key, inner in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_value(item) for item in value)
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_to_json_value(item) for item in value]
    return str(value)


def normalize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``payload`` whose values survive ``json.dumps``."""
    if not payload:
        return {}
    return {str(key): _to_json_value(value) for key, value in payload.items()}


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` entries."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1.")
    for start in range(0, len(items), size):
        yield items[start : start + size]
