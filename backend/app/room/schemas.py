"""Domain models for the room state engine.

These are what the presentation layer reads. They are built from validated
transport rows (``from_row``) or from a local write, and are frozen: the
engine swaps entries instead of mutating them, so a snapshot handed out
earlier never changes underneath its reader.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.transport.schemas import (
    MessageReactionRow,
    MessageRow,
    ReactionRow,
    ReactionType,
    TransportError,
    TransportMode,
)

# Ids of optimistic entries that the store has not confirmed yet.
PROVISIONAL_ID_PREFIX = "local-"

# Author handle of synthetic, never-persisted notices.
SYSTEM_HANDLE = "システムメッセージ"


def provisional_id() -> str:
    return f"{PROVISIONAL_ID_PREFIX}{uuid.uuid4().hex}"


def _ordered_unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class DeliveryStatus(str, Enum):
    """Where an entry stands relative to the backing store.

    Attributes:
        LOCAL: Degraded mode; the entry never leaves this device.
        SUBMITTED: Optimistic copy, insert in flight.
        CONFIRMED: Row confirmed by the store (or received from the feed).
        FAILED: Insert failed; the optimistic copy stays visible.
    """
    LOCAL = "local"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Message(BaseModel):
    """A chat message in a room.

    Attributes:
        id: Store-assigned id, or a ``local-`` provisional id.
        room_id: Room the message belongs to.
        text: Message body.
        created_at: Server timestamp, or local clock for optimistic copies.
        author_handle: Participant handle of the sender.
        is_from_host: Sent through a host link.
        host_display_name: Real name shown for host messages.
        mentioned_handles: Handles addressed by the message (ordered, unique).
        is_own_message: Author is the local participant.
        is_system: Synthetic notice, excluded from counts.
        delivery: Delivery state of the entry.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    text: str
    created_at: datetime
    author_handle: str
    is_from_host: bool = False
    host_display_name: Optional[str] = None
    mentioned_handles: List[str] = Field(default_factory=list)
    is_own_message: bool = False
    is_system: bool = False
    delivery: DeliveryStatus = DeliveryStatus.CONFIRMED

    @field_validator("mentioned_handles")
    @classmethod
    def _unique_mentions(cls, value: List[str]) -> List[str]:
        return _ordered_unique(value)

    @classmethod
    def from_row(cls, row: MessageRow, local_handle: str) -> "Message":
        return cls(
            id=row.id,
            room_id=row.room_id,
            text=row.text,
            created_at=row.timestamp,
            author_handle=row.user_id,
            is_from_host=row.is_host,
            host_display_name=row.host_name if row.is_host else None,
            mentioned_handles=row.mentions,
            is_own_message=row.user_id == local_handle,
        )

    def to_row(self) -> Dict[str, Any]:
        """Wire payload for an insert (store assigns id and timestamp)."""
        return {
            "text": self.text,
            "room_id": self.room_id,
            "user_id": self.author_handle,
            "mentions": list(self.mentioned_handles),
            "is_host": self.is_from_host,
            "host_name": self.host_display_name if self.is_from_host else None,
        }


class RoomReaction(BaseModel):
    """Anonymous room-wide sentiment reaction."""
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    type: ReactionType
    created_at: datetime
    delivery: DeliveryStatus = DeliveryStatus.CONFIRMED

    @classmethod
    def from_row(cls, row: ReactionRow) -> "RoomReaction":
        return cls(id=row.id, room_id=row.room_id, type=row.type, created_at=row.timestamp)

    def to_row(self) -> Dict[str, Any]:
        return {"type": self.type.value, "room_id": self.room_id}


class MessageReaction(BaseModel):
    """A participant's reaction to one message."""
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    message_id: str
    author_handle: str
    type: ReactionType = ReactionType.LIKE
    created_at: datetime
    delivery: DeliveryStatus = DeliveryStatus.CONFIRMED

    @classmethod
    def from_row(cls, row: MessageReactionRow) -> "MessageReaction":
        return cls(
            id=row.id,
            room_id=row.room_id,
            message_id=row.message_id,
            author_handle=row.user_id,
            type=row.type,
            created_at=row.timestamp,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "user_id": self.author_handle,
            "room_id": self.room_id,
            "type": self.type.value,
        }


Entry = Union[Message, RoomReaction, MessageReaction]


class SendMessageOptions(BaseModel):
    """Options for ``send_message``.

    ``is_from_host`` left as None means "use the session's host setting".
    """
    mentioned_handles: List[str] = Field(default_factory=list)
    is_from_host: Optional[bool] = None
    host_display_name: Optional[str] = None


class HostInfo(BaseModel):
    """Set when the local participant joined through a host link."""
    display_name: str


class RoomSnapshot(BaseModel):
    """Read-only view of the active room handed to the presentation layer."""
    room_id: Optional[str] = None
    mode: TransportMode
    local_handle: str
    host: Optional[HostInfo] = None
    messages: List[Message] = Field(default_factory=list)
    reactions: List[RoomReaction] = Field(default_factory=list)
    message_reactions: List[MessageReaction] = Field(default_factory=list)


class WriteStatus(str, Enum):
    """Terminal result of one local write attempt."""
    LOCAL = "local"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class WriteOutcome:
    """What happened to a ``send_message``, ``add_reaction`` or ``add_message_reaction`` call."""
    status: WriteStatus
    entry: Optional[Entry] = None
    error: Optional[TransportError] = None

    @property
    def ok(self) -> bool:
        return self.status in (WriteStatus.LOCAL, WriteStatus.CONFIRMED)
