"""JSON-file key/value store shared by the identity provider and degraded mode.

All values are strings, mirroring the browser storage API the room client
was designed around. Every write rewrites the whole file through a temp file
and ``os.replace`` so a crash never leaves a half-written document behind.

Thread Safety:
    Designed for a single event loop. Not safe for concurrent writers.
"""
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from app.config import RoomSyncConfig

logger = logging.getLogger(__name__)

STORAGE_FILE_NAME = "local_storage.json"


class StorageUnavailableError(Exception):
    """Raised when the state directory cannot be read or written."""


class LocalStorage:
    """String key/value storage persisted as one JSON document.

    Use :meth:`open` rather than the constructor so that an unusable state
    directory is reported up front.
    """

    def __init__(self, path: Path, items: Optional[Dict[str, str]] = None) -> None:
        self._path = path
        self._items: Dict[str, str] = dict(items or {})

    @classmethod
    def open(cls, state_dir: str) -> "LocalStorage":
        """Open (creating if needed) the storage file under *state_dir*.

        Raises:
            StorageUnavailableError: If the directory cannot be created or
                written, or the existing file cannot be parsed.
        """
        directory = Path(state_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create state dir {directory}: {e}") from e

        if not os.access(directory, os.W_OK):
            raise StorageUnavailableError(f"State dir {directory} is not writable")

        path = directory / STORAGE_FILE_NAME
        items: Dict[str, str] = {}
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8") or "{}")
            except (OSError, json.JSONDecodeError) as e:
                raise StorageUnavailableError(f"Cannot read {path}: {e}") from e
            if not isinstance(loaded, dict):
                raise StorageUnavailableError(f"{path} does not hold a JSON object")
            items = {str(k): str(v) for k, v in loaded.items()}

        logger.info("[Storage] Opened %s (%d keys)", path, len(items))
        return cls(path, items)

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store *value* under *key* and flush to disk.

        Raises:
            StorageUnavailableError: If the file cannot be written. The
                in-memory value is kept either way.
        """
        self._items[key] = value
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(self._items, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {self._path}: {e}") from e


def open_local_storage(config: RoomSyncConfig) -> Optional[LocalStorage]:
    """Open the configured storage, or return None for volatile operation."""
    if not config.storage.enabled:
        logger.info("[Storage] Local storage disabled in config; running volatile")
        return None
    try:
        return LocalStorage.open(config.storage.state_dir)
    except StorageUnavailableError as e:
        logger.warning("[Storage] Local storage unavailable, falling back to memory-only: %s", e)
        return None
