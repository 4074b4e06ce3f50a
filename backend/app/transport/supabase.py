"""Connected transport: Supabase REST (PostgREST) + Realtime.

Queries and inserts go over httpx to ``<url>/rest/v1/<table>``. Inserts ask
for ``return=representation`` so the confirmed row (with its definitive id
and timestamp) comes back in-band and the engine can retire its optimistic
copy explicitly. Change feeds are :class:`RealtimeChannel` instances.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

import httpx

from app.config import RealtimeSettings

from .base import InsertCallback, Subscription, Transport
from .realtime import RealtimeChannel, realtime_socket_url
from .schemas import (
    Table,
    TransportError,
    TransportMode,
    TransportResult,
    parse_row,
    parse_rows,
)

logger = logging.getLogger(__name__)


def _http_error(table: Table, response: httpx.Response) -> TransportError:
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    message = body.get("message") if isinstance(body, dict) else None
    return TransportError(
        code="http_error",
        message=message or f"HTTP {response.status_code}",
        table=table,
        details={"status_code": response.status_code, "body": body},
    )


class SupabaseTransport(Transport):
    """Transport backed by a Supabase project.

    Args:
        url: Project URL (``https://<ref>.supabase.co``).
        anon_key: Public anon key, sent as ``apikey`` and bearer token.
        realtime: Heartbeat/reconnect/timeout settings.
        http_transport: Optional httpx transport (tests inject a MockTransport).
        connect: Optional WebSocket connect factory for the realtime feed.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        realtime: Optional[RealtimeSettings] = None,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._key = anon_key
        self._realtime = realtime or RealtimeSettings()
        self._connect = connect
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/rest/v1/",
            headers={
                "apikey": anon_key,
                "Authorization": f"Bearer {anon_key}",
            },
            timeout=self._realtime.request_timeout_seconds,
            transport=http_transport,
        )
        self._channels: Set[RealtimeChannel] = set()
        # Released channels whose connection task may still be unwinding.
        self._closing: Set[RealtimeChannel] = set()

    @property
    def mode(self) -> TransportMode:
        return TransportMode.CONNECTED

    @property
    def open_channels(self) -> int:
        return len(self._channels)

    async def query(self, table: Table, room_id: str) -> TransportResult:
        try:
            response = await self._client.get(
                table.value,
                params={
                    "select": "*",
                    "room_id": f"eq.{room_id}",
                    "order": "timestamp.asc",
                },
            )
        except httpx.HTTPError as e:
            logger.warning("[Transport] Query %s/%s failed: %s", table.value, room_id, e)
            return TransportResult(error=TransportError(
                code="network_error", message=str(e) or type(e).__name__, table=table,
            ))

        if response.is_error:
            return TransportResult(error=_http_error(table, response))

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, list):
            return TransportResult(error=TransportError(
                code="invalid_response",
                message="Expected a JSON array of rows",
                table=table,
            ))
        return TransportResult(data=parse_rows(table, payload))

    async def insert(self, table: Table, row: Dict[str, Any]) -> TransportResult:
        try:
            response = await self._client.post(
                table.value,
                json=[row],
                headers={"Prefer": "return=representation"},
            )
        except httpx.HTTPError as e:
            logger.warning("[Transport] Insert into %s failed: %s", table.value, e)
            return TransportResult(error=TransportError(
                code="network_error", message=str(e) or type(e).__name__, table=table,
            ))

        if response.is_error:
            return TransportResult(error=_http_error(table, response))

        try:
            payload = response.json()
        except ValueError:
            payload = None
        confirmed = None
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            confirmed = parse_row(table, payload[0])
        if confirmed is None:
            return TransportResult(error=TransportError(
                code="invalid_response",
                message="Insert response did not contain the confirmed row",
                table=table,
                details={"body": payload},
            ))
        return TransportResult(data=confirmed)

    def subscribe(
        self, table: Table, room_id: str, on_insert: InsertCallback
    ) -> Subscription:
        channel = RealtimeChannel(
            realtime_socket_url(self._url, self._key),
            self._key,
            table,
            room_id,
            on_insert,
            heartbeat_interval=self._realtime.heartbeat_interval_seconds,
            reconnect_delay=self._realtime.reconnect_delay_seconds,
            connect=self._connect,
        )
        channel.start()
        self._channels.add(channel)
        logger.info("[Transport] Opened feed %s", channel.topic)

        def release() -> None:
            channel.close()
            self._channels.discard(channel)
            self._closing = {c for c in self._closing if not c.done}
            self._closing.add(channel)
            logger.info("[Transport] Released feed %s", channel.topic)

        return Subscription(table, room_id, release)

    async def aclose(self) -> None:
        for channel in self._channels:
            channel.close()
        closing = self._channels | self._closing
        self._channels.clear()
        self._closing.clear()
        await asyncio.gather(*(channel.wait_closed() for channel in closing))
        await self._client.aclose()
