"""Shared test fixtures and configuration for backend tests."""
import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from app.config import RoomSyncConfig, set_config
from app.room.session import set_session
from app.transport.base import InsertCallback, Subscription, Transport
from app.transport.schemas import (
    Table,
    TransportError,
    TransportMode,
    TransportResult,
    parse_row,
)

LOCAL_HANDLE = "匿名の参加者#BEEF"
OTHER_HANDLE = "匿名の参加者#CAFE"


class FakeTransport(Transport):
    """In-memory connected transport with hooks for ordering tests.

    Attributes:
        query_results: Per-table result (or exception to raise) for ``query``.
        query_gates: Per-room events ``query`` waits on before answering.
        insert_gate: Event ``insert`` waits on before answering.
        insert_error: When set, ``insert`` fails with this error.
        insert_exception: When set, ``insert`` raises it.
        inserted: Every ``(table, row)`` passed to ``insert``.
        feeds: Every subscription opened, with its callback.
    """

    def __init__(self) -> None:
        self.query_results: Dict[Table, Union[TransportResult, Exception]] = {}
        self.query_gates: Dict[str, asyncio.Event] = {}
        self.insert_gate: Optional[asyncio.Event] = None
        self.insert_error: Optional[TransportError] = None
        self.insert_exception: Optional[Exception] = None
        self.inserted: List[Tuple[Table, Dict[str, Any]]] = []
        self.feeds: List[Tuple[Subscription, InsertCallback]] = []
        self._ids = itertools.count(1)

    @property
    def mode(self) -> TransportMode:
        return TransportMode.CONNECTED

    async def query(self, table: Table, room_id: str) -> TransportResult:
        gate = self.query_gates.get(room_id)
        if gate is not None:
            await gate.wait()
        result = self.query_results.get(table, TransportResult(data=[]))
        if isinstance(result, Exception):
            raise result
        return TransportResult(
            data=[row for row in (result.data or []) if row.room_id == room_id],
            error=result.error,
        )

    async def insert(self, table: Table, row: Dict[str, Any]) -> TransportResult:
        self.inserted.append((table, row))
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.insert_exception is not None:
            raise self.insert_exception
        if self.insert_error is not None:
            return TransportResult(error=self.insert_error)
        confirmed = parse_row(table, {
            **row,
            "id": f"srv-{next(self._ids)}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return TransportResult(data=confirmed)

    def subscribe(self, table: Table, room_id: str, on_insert: InsertCallback) -> Subscription:
        subscription = Subscription(table, room_id)
        self.feeds.append((subscription, on_insert))
        return subscription

    # Test helpers

    def live_feeds(self, table: Optional[Table] = None, room_id: Optional[str] = None):
        return [
            (s, cb) for s, cb in self.feeds
            if s.active
            and (table is None or s.table is table)
            and (room_id is None or s.room_id == room_id)
        ]

    def emit(self, table: Table, raw: Dict[str, Any]) -> None:
        """Deliver *raw* to every live feed of *table* for its room."""
        row = parse_row(table, raw)
        assert row is not None, f"invalid test row: {raw}"
        for _, callback in self.live_feeds(table, row.room_id):
            callback(row)


def message_row(
    id: str,
    room_id: str = "room-1",
    text: str = "hello",
    user_id: str = OTHER_HANDLE,
    second: int = 0,
    **extra: Any,
) -> Dict[str, Any]:
    return {
        "id": id,
        "room_id": room_id,
        "text": text,
        "user_id": user_id,
        "timestamp": f"2024-05-01T10:00:{second:02d}+00:00",
        **extra,
    }


def reaction_row(id: str, room_id: str = "room-1", type: str = "like", second: int = 0) -> Dict[str, Any]:
    return {
        "id": id,
        "room_id": room_id,
        "type": type,
        "timestamp": f"2024-05-01T10:00:{second:02d}+00:00",
    }


def message_reaction_row(
    id: str,
    message_id: str,
    room_id: str = "room-1",
    user_id: str = OTHER_HANDLE,
    second: int = 0,
    **extra: Any,
) -> Dict[str, Any]:
    return {
        "id": id,
        "room_id": room_id,
        "message_id": message_id,
        "user_id": user_id,
        "timestamp": f"2024-05-01T10:00:{second:02d}+00:00",
        **extra,
    }


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def degraded_config(tmp_path) -> RoomSyncConfig:
    """Config with no backing service and storage under tmp_path."""
    return RoomSyncConfig(storage={"state_dir": str(tmp_path / "state")})


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Keep the process-wide config and session from leaking between tests."""
    yield
    set_config(None)
    set_session(None)
