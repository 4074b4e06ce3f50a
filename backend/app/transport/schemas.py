"""Wire-level schemas shared by every transport.

Field names match the backing tables exactly (``user_id``, ``room_id``,
``timestamp`` …). Rows are validated here, at the adapter boundary, so that
nothing untyped ever reaches the room engine's collections.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class Table(str, Enum):
    """Backing tables, one per entity kind."""
    MESSAGES = "messages"
    REACTIONS = "reactions"
    MESSAGE_REACTIONS = "message_reactions"


class ReactionType(str, Enum):
    """Closed set of reaction kinds, used for room and message reactions."""
    LIKE = "like"
    IDEA = "idea"
    QUESTION = "question"
    CONFUSED = "confused"


class TransportMode(str, Enum):
    """Whether a real backing store is in use."""
    CONNECTED = "connected"
    DEGRADED = "degraded"


def _coerce_timestamp(value: datetime) -> datetime:
    # Naive timestamps from the store are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    room_id: str
    timestamp: datetime

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _coerce_timestamp(value)


class MessageRow(_Row):
    """A row of the ``messages`` table."""
    text: str
    user_id: str
    is_host: bool = False
    host_name: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)

    @field_validator("is_host", mode="before")
    @classmethod
    def _null_is_host(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("mentions", mode="before")
    @classmethod
    def _null_mentions(cls, value: Any) -> Any:
        return [] if value is None else value


class ReactionRow(_Row):
    """A row of the ``reactions`` table (anonymous, room-wide)."""
    type: ReactionType


class MessageReactionRow(_Row):
    """A row of the ``message_reactions`` table.

    ``type`` was added after the first schema revision; rows written before
    it existed are read back as ``like``.
    """
    message_id: str
    user_id: str
    type: ReactionType = ReactionType.LIKE

    @field_validator("message_id", mode="before")
    @classmethod
    def _message_id_as_str(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> Any:
        return ReactionType.LIKE if value in (None, "") else value


Row = Union[MessageRow, ReactionRow, MessageReactionRow]

ROW_MODELS = {
    Table.MESSAGES: MessageRow,
    Table.REACTIONS: ReactionRow,
    Table.MESSAGE_REACTIONS: MessageReactionRow,
}


def parse_row(table: Table, raw: Dict[str, Any]) -> Optional[Row]:
    """Validate a raw row for *table*; log and return None when malformed."""
    try:
        return ROW_MODELS[table].model_validate(raw)
    except ValidationError as e:
        logger.warning(
            "[Transport] Dropping malformed %s row id=%s: %s",
            table.value,
            raw.get("id") if isinstance(raw, dict) else None,
            e.errors(include_url=False),
        )
        return None


def parse_rows(table: Table, raws: List[Dict[str, Any]]) -> List[Row]:
    rows = []
    for raw in raws:
        row = parse_row(table, raw)
        if row is not None:
            rows.append(row)
    return rows


class TransportError(BaseModel):
    """Structured failure of a query or insert.

    Attributes:
        code: Short machine-readable code (``http_error``, ``network_error`` …).
        message: Human-readable description.
        table: Table the failed operation targeted.
        details: Provider-specific extras (status code, response body …).
    """
    code: str
    message: str
    table: Optional[Table] = None
    details: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class TransportResult:
    """Outcome of a transport call: either ``data`` or ``error`` is set."""
    data: Any = None
    error: Optional[TransportError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
