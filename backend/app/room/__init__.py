"""Room state engine, mention resolution, dashboard and HTTP surface."""

from .engine import EntryCollection, RoomStateEngine
from .schemas import (
    DeliveryStatus,
    HostInfo,
    Message,
    MessageReaction,
    RoomReaction,
    RoomSnapshot,
    SendMessageOptions,
    WriteOutcome,
    WriteStatus,
)
from .session import RoomSession, get_session, set_session
from .router import router

__all__ = [
    "DeliveryStatus",
    "EntryCollection",
    "HostInfo",
    "Message",
    "MessageReaction",
    "RoomReaction",
    "RoomSession",
    "RoomSnapshot",
    "RoomStateEngine",
    "SendMessageOptions",
    "WriteOutcome",
    "WriteStatus",
    "get_session",
    "router",
    "set_session",
]
