"""Degraded-mode transport over an in-memory (optionally storage-backed) store.

Used when no backing service is configured. The store is an explicit context
object: build one per process and hand it to the transport, rather than
sharing module-level tables between instances.

Storage keys follow the ``mock-<table>`` convention, one serialized JSON
array per table. The arrays are read once at construction and rewritten
after every insert.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.storage import LocalStorage, StorageUnavailableError

from .base import InsertCallback, Subscription, Transport
from .schemas import (
    Table,
    TransportError,
    TransportMode,
    TransportResult,
    parse_row,
    parse_rows,
)

logger = logging.getLogger(__name__)


def storage_key(table: Table) -> str:
    return f"mock-{table.value}"


class DegradedStore:
    """In-memory tables with an optional local-storage shadow.

    Args:
        storage: Where to shadow the tables, or None for memory only.
    """

    def __init__(self, storage: Optional[LocalStorage] = None) -> None:
        self._storage = storage
        self._tables: Dict[Table, List[Dict[str, Any]]] = {
            table: self._load(table) for table in Table
        }

    @property
    def persistent(self) -> bool:
        return self._storage is not None

    def rows(self, table: Table) -> List[Dict[str, Any]]:
        return list(self._tables[table])

    def append(self, table: Table, row: Dict[str, Any]) -> None:
        self._tables[table].append(row)
        self._persist(table)

    def _load(self, table: Table) -> List[Dict[str, Any]]:
        if self._storage is None:
            return []
        raw = self._storage.get_item(storage_key(table))
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("[Storage] Ignoring unreadable %s shadow: %s", table.value, e)
            return []
        if not isinstance(data, list):
            logger.warning("[Storage] Ignoring %s shadow that is not a list", table.value)
            return []
        return [row for row in data if isinstance(row, dict)]

    def _persist(self, table: Table) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set_item(
                storage_key(table),
                json.dumps(self._tables[table], ensure_ascii=False),
            )
        except StorageUnavailableError as e:
            # Logged once: the store stays volatile from here on.
            logger.warning("[Storage] Shadow write failed, degraded store is now memory-only: %s", e)
            self._storage = None


class DegradedTransport(Transport):
    """Transport implementation backed by a :class:`DegradedStore`.

    ``insert`` completes without awaiting anything and returns the
    normalized row. ``subscribe`` never delivers events since there are no
    remote peers.
    """

    def __init__(self, store: DegradedStore) -> None:
        self._store = store

    @property
    def mode(self) -> TransportMode:
        return TransportMode.DEGRADED

    @property
    def store(self) -> DegradedStore:
        return self._store

    async def query(self, table: Table, room_id: str) -> TransportResult:
        return self.query_now(table, room_id)

    def query_now(self, table: Table, room_id: str) -> TransportResult:
        raws = [r for r in self._store.rows(table) if r.get("room_id") == room_id]
        rows = parse_rows(table, raws)
        rows.sort(key=lambda r: r.timestamp)
        return TransportResult(data=rows)

    async def insert(self, table: Table, row: Dict[str, Any]) -> TransportResult:
        return self.insert_now(table, row)

    def insert_now(self, table: Table, row: Dict[str, Any]) -> TransportResult:
        """Synchronous insert; the degraded store never waits on I/O."""
        normalized = {
            **row,
            "id": row.get("id") or str(uuid.uuid4()),
            "timestamp": row.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        }
        parsed = parse_row(table, normalized)
        if parsed is None:
            return TransportResult(error=TransportError(
                code="invalid_row",
                message=f"Row rejected by {table.value} schema",
                table=table,
            ))
        self._store.append(table, parsed.model_dump(mode="json"))
        return TransportResult(data=parsed)

    def subscribe(
        self, table: Table, room_id: str, on_insert: InsertCallback
    ) -> Subscription:
        logger.debug("[Transport] Degraded feed for %s/%s delivers nothing", table.value, room_id)
        return Subscription(table, room_id)
