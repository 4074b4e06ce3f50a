"""IdentityProvider: one opaque participant handle per device profile.

The handle is created on first use, written to local storage under a fixed
key and never cleared. Nothing validates it server-side; the engine only
compares it against the ``user_id`` of incoming rows.
"""
import logging
import secrets
from typing import Optional

from app.storage import LocalStorage, StorageUnavailableError

logger = logging.getLogger(__name__)

IDENTITY_STORAGE_KEY = "chat-user-id"

# Number of random hex characters appended to the prefix.
HANDLE_SUFFIX_LENGTH = 4


class IdentityProvider:
    """Supplies the local participant handle.

    Args:
        storage: Device-local storage, or None for a volatile handle that
                 lasts as long as this provider.
        prefix: Human-readable prefix placed before the random suffix.
    """

    def __init__(self, storage: Optional[LocalStorage], prefix: str = "匿名の参加者#") -> None:
        self._storage = storage
        self._prefix = prefix
        self._handle: Optional[str] = None

    def get_handle(self) -> str:
        """Return the persisted handle, creating and storing it if absent."""
        if self._handle is not None:
            return self._handle

        if self._storage is not None:
            stored = self._storage.get_item(IDENTITY_STORAGE_KEY)
            if stored:
                self._handle = stored
                return stored

        handle = self._generate()
        if self._storage is not None:
            try:
                self._storage.set_item(IDENTITY_STORAGE_KEY, handle)
            except StorageUnavailableError as e:
                logger.warning("[Identity] Could not persist handle, it will not survive restart: %s", e)
        logger.info("[Identity] Created participant handle %s", handle)
        self._handle = handle
        return handle

    def _generate(self) -> str:
        suffix = secrets.token_hex(HANDLE_SUFFIX_LENGTH)[:HANDLE_SUFFIX_LENGTH].upper()
        return f"{self._prefix}{suffix}"
