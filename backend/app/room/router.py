"""Room router providing HTTP and WebSocket endpoints.

This module provides:
    - POST   /room: Join (or switch to) a room
    - GET    /room: Current room snapshot
    - DELETE /room: Leave the current room
    - POST   /room/messages: Send a message
    - POST   /room/reactions: Add an anonymous room reaction
    - POST   /room/messages/{message_id}/reactions: React to a message
    - GET    /room/messages/{message_id}/reactions: Reaction summary of a message
    - GET    /room/stats: Dashboard counts
    - GET    /room/mentions: Mention candidates and messages addressed to me
    - GET    /identity: Local participant handle
    - WebSocket /ws/room: Live snapshots plus write actions

The WebSocket protocol:
    Server -> client:
        - snapshot: full room snapshot, sent on connect and after every change
        - error: a client action was refused
    Client -> server:
        - message: {"type": "message", "text": ..., "mentions": [...]?}
        - reaction: {"type": "reaction", "reaction_type": ...}
        - message_reaction: {"type": "message_reaction", "message_id": ..., "reaction_type": ...}
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from app.transport.schemas import ReactionType

from .dashboard import MessageReactionSummary, RoomStats, message_reaction_summary, room_stats
from .mentions import extract_mentions, resolve_mentions
from .schemas import RoomSnapshot, SendMessageOptions, WriteOutcome, WriteStatus
from .session import RoomSession, get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["room"])


# =============================================================================
# Request / response models
# =============================================================================


class JoinRoomRequest(BaseModel):
    room_id: str
    host_name: Optional[str] = None


class SendMessageRequest(BaseModel):
    """Body of ``POST /room/messages``.

    ``mentions`` left out means "extract ``@handle`` tokens from the text".
    """
    text: str
    mentions: Optional[List[str]] = None
    is_host: Optional[bool] = None
    host_name: Optional[str] = None


class ReactionRequest(BaseModel):
    type: ReactionType


class WriteResponse(BaseModel):
    status: WriteStatus
    entry: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class MentionsResponse(BaseModel):
    handles: List[str]
    addressed_to_me: List[str]


class IdentityResponse(BaseModel):
    handle: str
    mode: str


# =============================================================================
# Helpers
# =============================================================================


def _require_session() -> RoomSession:
    session = get_session()
    if session is None:
        raise HTTPException(status_code=503, detail="Room session is not initialised")
    return session


def _require_room(session: RoomSession) -> RoomSession:
    if session.engine.room_id is None:
        raise HTTPException(status_code=409, detail="No active room")
    return session


def _write_response(outcome: WriteOutcome) -> WriteResponse:
    return WriteResponse(
        status=outcome.status,
        entry=outcome.entry.model_dump(mode="json") if outcome.entry else None,
        error=outcome.error.model_dump(mode="json") if outcome.error else None,
    )


async def _send_message(
    session: RoomSession,
    text: str,
    mentions: Optional[List[str]] = None,
    is_host: Optional[bool] = None,
    host_name: Optional[str] = None,
) -> WriteOutcome:
    """Trim, validate and send. Raises ValueError on blank text."""
    text = text.strip()
    if not text:
        raise ValueError("Message text must not be empty")
    options = SendMessageOptions(
        mentioned_handles=mentions if mentions is not None else extract_mentions(text),
        is_from_host=is_host,
        host_display_name=host_name,
    )
    return await session.engine.send_message(text, options)


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.post("/room", response_model=RoomSnapshot)
async def join_room(request: JoinRoomRequest) -> RoomSnapshot:
    """Join a room, leaving the current one first.

    Args:
        request: Room key and optional host display name.

    Returns:
        Snapshot of the room after hydration.
    """
    session = _require_session()
    try:
        return await session.engine.activate(request.room_id, host_display_name=request.host_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/room", response_model=RoomSnapshot)
async def get_room() -> RoomSnapshot:
    return _require_session().engine.snapshot()


@router.delete("/room", response_model=RoomSnapshot)
async def leave_room() -> RoomSnapshot:
    session = _require_session()
    session.engine.deactivate()
    return session.engine.snapshot()


@router.post("/room/messages", response_model=WriteResponse)
async def post_message(request: SendMessageRequest) -> WriteResponse:
    """Send a message to the active room.

    The message is visible in the snapshot before the store answers; the
    response carries the final delivery status.
    """
    session = _require_room(_require_session())
    try:
        outcome = await _send_message(
            session, request.text, request.mentions, request.is_host, request.host_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _write_response(outcome)


@router.post("/room/reactions", response_model=WriteResponse)
async def post_reaction(request: ReactionRequest) -> WriteResponse:
    session = _require_room(_require_session())
    return _write_response(await session.engine.add_reaction(request.type))


@router.post("/room/messages/{message_id}/reactions", response_model=WriteResponse)
async def post_message_reaction(message_id: str, request: ReactionRequest) -> WriteResponse:
    """React to a message.

    Returns 409 when the participant already reacted and the room only
    allows one reaction per participant.
    """
    session = _require_room(_require_session())
    outcome = await session.engine.add_message_reaction(message_id, request.type)
    if outcome.status is WriteStatus.REJECTED:
        raise HTTPException(status_code=409, detail="Already reacted to this message")
    return _write_response(outcome)


@router.get("/room/messages/{message_id}/reactions", response_model=MessageReactionSummary)
async def get_message_reactions(message_id: str) -> MessageReactionSummary:
    engine = _require_room(_require_session()).engine
    return message_reaction_summary(message_id, engine.message_reactions, engine.local_handle)


@router.get("/room/stats", response_model=RoomStats)
async def get_room_stats() -> RoomStats:
    session = _require_room(_require_session())
    dashboard = session.config.dashboard
    return room_stats(
        session.engine.messages,
        session.engine.reactions,
        message_goal=dashboard.message_goal,
        reaction_goal=dashboard.reaction_goal,
    )


@router.get("/room/mentions", response_model=MentionsResponse)
async def get_mentions() -> MentionsResponse:
    engine = _require_room(_require_session()).engine
    messages = engine.messages
    view = resolve_mentions(messages, engine.local_handle)
    # Keep collection order for the ids.
    addressed = [m.id for m in messages if m.id in view.addressed_to_me]
    return MentionsResponse(handles=view.handles, addressed_to_me=addressed)


@router.get("/identity", response_model=IdentityResponse)
async def get_identity() -> IdentityResponse:
    session = _require_session()
    return IdentityResponse(handle=session.engine.local_handle, mode=session.engine.mode.value)


# =============================================================================
# WebSocket
# =============================================================================


def _snapshot_frame(snapshot: RoomSnapshot) -> Dict[str, Any]:
    return {"type": "snapshot", **snapshot.model_dump(mode="json")}


def _error_frame(message: str) -> Dict[str, Any]:
    return {"type": "error", "error": message}


async def _handle_action(session: RoomSession, data: Dict[str, Any]) -> Optional[str]:
    """Apply one client action; return an error message or None."""
    action = data.get("type")
    if session.engine.room_id is None:
        return "No active room"

    try:
        if action == "message":
            outcome = await _send_message(session, str(data.get("text", "")), data.get("mentions"))
        elif action == "reaction":
            outcome = await session.engine.add_reaction(ReactionType(data.get("reaction_type")))
        elif action == "message_reaction":
            message_id = data.get("message_id")
            if not message_id:
                return "message_id is required"
            outcome = await session.engine.add_message_reaction(
                str(message_id), ReactionType(data.get("reaction_type", ReactionType.LIKE.value)),
            )
        else:
            return f"Unknown action type: {action!r}"
    except (ValueError, ValidationError, RuntimeError) as e:
        return str(e)

    if outcome.status is WriteStatus.REJECTED:
        return "Already reacted to this message"
    if outcome.status is WriteStatus.FAILED and outcome.error is not None:
        return outcome.error.message
    return None


@router.websocket("/ws/room")
async def room_websocket(websocket: WebSocket) -> None:
    """Stream snapshots of the active room and accept write actions.

    A single sender task drains an outbound queue so frames never
    interleave. Actions that are not JSON objects get an error frame.
    """
    session = get_session()
    if session is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    outbound: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def on_snapshot(snapshot: RoomSnapshot) -> None:
        outbound.put_nowait(_snapshot_frame(snapshot))

    async def pump() -> None:
        while True:
            frame = await outbound.get()
            await websocket.send_json(frame)

    await websocket.send_json(_snapshot_frame(session.engine.snapshot()))
    session.engine.add_listener(on_snapshot)
    sender = asyncio.create_task(pump())
    logger.info("[WS] Client connected to room stream")

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                outbound.put_nowait(_error_frame("Action must be a JSON object"))
                continue
            logger.debug("[WS] Received action: type=%s", data.get("type", "?"))
            error = await _handle_action(session, data)
            if error is not None:
                outbound.put_nowait(_error_frame(error))
    except WebSocketDisconnect:
        logger.info("[WS] Client disconnected from room stream")
    finally:
        session.engine.remove_listener(on_snapshot)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
