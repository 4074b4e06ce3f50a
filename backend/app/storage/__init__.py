"""Device-local key/value storage.

A small JSON-file analogue of browser localStorage. It holds the persistent
participant handle and the degraded-mode table shadow. When the state
directory cannot be used, callers fall back to volatile in-memory behavior.
"""
from .service import LocalStorage, StorageUnavailableError, open_local_storage

__all__ = [
    "LocalStorage",
    "StorageUnavailableError",
    "open_local_storage",
]
