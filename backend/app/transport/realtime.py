"""Push feed client for the Supabase Realtime (Phoenix channel) protocol.

One ``RealtimeChannel`` owns one WebSocket connection, joined to a single
topic that carries INSERT events for one table filtered to one room.

Protocol Flow:
    1. Connect to ``wss://<project>/realtime/v1/websocket?apikey=…&vsn=1.0.0``
    2. Send ``phx_join`` with a ``postgres_changes`` INSERT filter
       ``room_id=eq.<room>``; the server answers with ``phx_reply``.
    3. Receive ``postgres_changes`` frames; ``payload.data.record`` is the row.
    4. Send ``heartbeat`` on the ``phoenix`` topic every interval.
    5. On release send ``phx_leave`` and close the socket.

The connection is re-established after a fixed delay if it drops. Events
missed while disconnected are not replayed; the feed is at-least-once at
best and the engine deduplicates by id.
"""
import asyncio
import contextlib
import json
import logging
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from .base import InsertCallback
from .schemas import Table, parse_row

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"


def realtime_socket_url(base_url: str, api_key: str) -> str:
    """Build the realtime WebSocket URL from the project's HTTP URL."""
    scheme, _, rest = base_url.rstrip("/").partition("://")
    ws_scheme = "wss" if scheme == "https" else "ws"
    query = urlencode({"apikey": api_key, "vsn": PROTOCOL_VERSION})
    return f"{ws_scheme}://{rest}/realtime/v1/websocket?{query}"


def channel_topic(table: Table, room_id: str) -> str:
    return f"realtime:{table.value.replace('_', '-')}-{room_id}"


class RealtimeChannel:
    """A single table+room INSERT feed.

    Args:
        socket_url: Full realtime WebSocket URL (see :func:`realtime_socket_url`).
        api_key: Key sent as the channel access token.
        table: Table to watch.
        room_id: Room filter applied server-side.
        on_insert: Called with each validated inserted row.
        heartbeat_interval: Seconds between heartbeats.
        reconnect_delay: Seconds to wait before reconnecting.
        connect: WebSocket connect factory (``websockets.connect`` by default).
    """

    def __init__(
        self,
        socket_url: str,
        api_key: str,
        table: Table,
        room_id: str,
        on_insert: InsertCallback,
        *,
        heartbeat_interval: float = 25.0,
        reconnect_delay: float = 3.0,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.table = table
        self.room_id = room_id
        self.topic = channel_topic(table, room_id)
        self._socket_url = socket_url
        self._api_key = api_key
        self._on_insert = on_insert
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_delay = reconnect_delay
        self._connect = connect or websockets.connect
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.joined = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        """Start the connection task on the running event loop."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"realtime:{self.topic}"
        )

    def close(self) -> None:
        """Stop delivering events and tear the connection down."""
        self._closed = True
        self.joined = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def done(self) -> bool:
        """True once the connection task has finished (or never started)."""
        return self._task is None or self._task.done()

    async def wait_closed(self) -> None:
        """Wait for the connection task to finish after :meth:`close`."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # -----------------------------------------------------------------------
    # Frames
    # -----------------------------------------------------------------------

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_frame(self) -> Dict[str, Any]:
        ref = self._next_ref()
        self._join_ref = ref
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [{
                        "event": "INSERT",
                        "schema": "public",
                        "table": self.table.value,
                        "filter": f"room_id=eq.{self.room_id}",
                    }],
                },
                "access_token": self._api_key,
            },
            "ref": ref,
            "join_ref": ref,
        }

    def leave_frame(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "event": "phx_leave",
            "payload": {},
            "ref": self._next_ref(),
            "join_ref": self._join_ref,
        }

    def heartbeat_frame(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    def handle_frame(self, raw: Union[str, bytes]) -> None:
        """Dispatch one incoming frame."""
        if self._closed:
            return
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[Realtime] %s: ignoring non-JSON frame", self.topic)
            return
        if not isinstance(frame, dict) or frame.get("topic") not in (self.topic, "phoenix"):
            return

        event = frame.get("event")
        payload = frame.get("payload") or {}
        if not isinstance(payload, dict):
            logger.warning("[Realtime] %s: ignoring %s frame with malformed payload", self.topic, event)
            return

        if event == "phx_reply":
            if frame.get("ref") != self._join_ref:
                return
            if payload.get("status") == "ok":
                self.joined = True
                logger.info("[Realtime] %s subscribed", self.topic)
            else:
                logger.warning("[Realtime] %s join rejected: %s", self.topic, payload.get("response"))
            return

        if event == "postgres_changes":
            data = payload.get("data") or {}
            if not isinstance(data, dict):
                logger.warning("[Realtime] %s: ignoring change with malformed data", self.topic)
                return
            if data.get("type") != "INSERT":
                return
            record = data.get("record")
            if not isinstance(record, dict):
                logger.warning("[Realtime] %s: ignoring INSERT without a record object", self.topic)
                return
            row = parse_row(self.table, record)
            if row is None or row.room_id != self.room_id:
                return
            try:
                self._on_insert(row)
            except Exception:
                logger.exception("[Realtime] %s insert callback failed for id=%s", self.topic, row.id)
            return

        if event in ("phx_error", "phx_close"):
            self.joined = False
            logger.warning("[Realtime] %s received %s", self.topic, event)

    # -----------------------------------------------------------------------
    # Connection loop
    # -----------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._closed:
            try:
                async with self._connect(self._socket_url) as ws:
                    await self._serve(ws)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                self.joined = False
                logger.warning("[Realtime] %s connection lost: %s", self.topic, e)
            except Exception:
                self.joined = False
                logger.exception("[Realtime] %s connection failed", self.topic)
            if self._closed:
                break
            await asyncio.sleep(self._reconnect_delay)

    async def _serve(self, ws: Any) -> None:
        await ws.send(json.dumps(self.join_frame()))
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                try:
                    self.handle_frame(raw)
                except Exception:
                    logger.exception("[Realtime] %s: failed to handle frame", self.topic)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            if self._closed:
                with contextlib.suppress(OSError, WebSocketException):
                    await ws.send(json.dumps(self.leave_frame()))

    async def _heartbeat(self, ws: Any) -> None:
        # A failed send ends the heartbeat; the read loop notices the closed socket.
        with contextlib.suppress(OSError, WebSocketException):
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                await ws.send(json.dumps(self.heartbeat_frame()))
