"""Transport abstract interface.

Every backing store is reduced to three primitives: an ordered bulk query,
an insert, and a per-room change feed. The room engine only ever talks to
this interface, so it behaves the same whether a real store is configured or
the degraded in-memory adapter stands in for it.

Usage:
    transport = build_transport(config, storage)
    result = await transport.query(Table.MESSAGES, "room-1")
    if result.ok:
        rows = result.data
    subscription = transport.subscribe(Table.MESSAGES, "room-1", on_insert)
    ...
    subscription.unsubscribe()
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from .schemas import Row, Table, TransportMode, TransportResult

logger = logging.getLogger(__name__)

InsertCallback = Callable[[Row], None]


class Subscription:
    """Handle for one open change feed.

    ``unsubscribe`` must be called once; later calls are logged and ignored.

    Args:
        table: Table the feed is scoped to.
        room_id: Room the feed is scoped to.
        release: Callable that closes the underlying channel, or None for
                 feeds that hold no resources.
    """

    def __init__(
        self,
        table: Table,
        room_id: str,
        release: Optional[Callable[[], None]] = None,
    ) -> None:
        self.table = table
        self.room_id = room_id
        self._release = release
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            logger.debug(
                "[Transport] Subscription %s/%s already released",
                self.table.value,
                self.room_id,
            )
            return
        self._active = False
        if self._release is not None:
            self._release()


class Transport(ABC):
    """Abstract base class for room data transports.

    Methods:
        query: Rows of one table for one room, ordered by timestamp.
        insert: Write one row; the result carries the confirmed row.
        subscribe: Open a push feed of newly inserted rows.
        aclose: Release network resources.
    """

    @property
    @abstractmethod
    def mode(self) -> TransportMode:
        """Connected or degraded."""

    @abstractmethod
    async def query(self, table: Table, room_id: str) -> TransportResult:
        """Return all rows of *table* in *room_id*, oldest first.

        Failures are returned as ``TransportResult(error=...)``, never raised.
        """

    @abstractmethod
    async def insert(self, table: Table, row: Dict[str, Any]) -> TransportResult:
        """Insert *row* into *table*.

        ``row`` carries wire field names; ``id`` and ``timestamp`` may be
        omitted and are assigned by the store. On success ``data`` is the
        validated confirmed row.
        """

    @abstractmethod
    def subscribe(
        self, table: Table, room_id: str, on_insert: InsertCallback
    ) -> Subscription:
        """Invoke *on_insert* for each row newly inserted into *table* in *room_id*."""

    async def aclose(self) -> None:
        """Release any resources held by the transport."""
        return None
