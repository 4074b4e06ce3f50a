"""Room state engine: one consistent, duplicate-free view of the active room.

The engine reconciles three sources into three ordered collections
(messages, room reactions, message reactions):

    - optimistic local writes (shown before the store confirms them)
    - asynchronously confirmed writes (the insert response)
    - the push feed of rows inserted by other participants

Key features:
    - Hydration: three ordered queries, each allowed to fail on its own
    - Three change feeds per room, released before the next room's open
    - Merge by id: a row already present is ignored, otherwise appended
    - Explicit reconciliation of optimistic writes via provisional ids
    - Degraded mode: a local-only room seeded with a system notice
    - Room-switch safety: late hydration responses, feed events and insert
      confirmations for a room that is no longer active are discarded

Ordering:
    Collections keep insertion order and are never re-sorted. Hydration
    delivers rows oldest first and feed events arrive after it, so append
    order is presentation order. Clock skew between clients is tolerated,
    not corrected.

Thread Safety:
    Designed for a single asyncio event loop. Feed callbacks, hydration
    continuations and local writes all run on that loop; no locking.
"""
import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, Generic, List, Optional, Set, Tuple, TypeVar

from app.transport.base import Subscription, Transport
from app.transport.schemas import (
    MessageReactionRow,
    MessageRow,
    ReactionType,
    Row,
    Table,
    TransportError,
    TransportMode,
    TransportResult,
)

from .schemas import (
    DeliveryStatus,
    Entry,
    HostInfo,
    Message,
    MessageReaction,
    RoomReaction,
    RoomSnapshot,
    SendMessageOptions,
    SYSTEM_HANDLE,
    WriteOutcome,
    WriteStatus,
    provisional_id,
)

logger = logging.getLogger(__name__)

# Id of the synthetic notice shown when no backing store is configured.
NOT_CONFIGURED_NOTICE_ID = "system-not-configured"
NOT_CONFIGURED_NOTICE_TEXT = (
    "The chat backend is not configured. Messages and reactions stay on this device."
)

TABLES: Tuple[Table, ...] = (Table.MESSAGES, Table.REACTIONS, Table.MESSAGE_REACTIONS)

SnapshotListener = Callable[[RoomSnapshot], None]

E = TypeVar("E", Message, RoomReaction, MessageReaction)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Collections
# =============================================================================


class EntryCollection(Generic[E]):
    """Insertion-ordered entries, unique by id.

    Only ``merge`` is used for rows seen from the store. ``replace``,
    ``update`` and ``remove`` exist for the engine's own provisional entries.
    """

    def __init__(self) -> None:
        self._items: List[E] = []
        self._ids: Set[str] = set()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._ids

    def items(self) -> List[E]:
        return list(self._items)

    def get(self, entry_id: str) -> Optional[E]:
        for item in self._items:
            if item.id == entry_id:
                return item
        return None

    def merge(self, entry: E) -> bool:
        """Append *entry* unless its id is already present.

        Returns:
            True if the collection changed.
        """
        if entry.id in self._ids:
            return False
        self._items.append(entry)
        self._ids.add(entry.id)
        return True

    def replace(self, old_id: str, entry: E) -> bool:
        """Put *entry* at the position of *old_id*.

        If *entry*'s id is already present elsewhere, *old_id* is simply
        removed so the id stays unique.
        """
        index = self._index(old_id)
        if index is None:
            return self.merge(entry)
        if entry.id != old_id and entry.id in self._ids:
            self.remove(old_id)
            return True
        self._items[index] = entry
        self._ids.discard(old_id)
        self._ids.add(entry.id)
        return True

    def update(self, entry_id: str, **changes) -> Optional[E]:
        index = self._index(entry_id)
        if index is None:
            return None
        updated = self._items[index].model_copy(update=changes)
        self._items[index] = updated
        return updated

    def remove(self, entry_id: str) -> bool:
        index = self._index(entry_id)
        if index is None:
            return False
        del self._items[index]
        self._ids.discard(entry_id)
        return True

    def _index(self, entry_id: str) -> Optional[int]:
        if entry_id not in self._ids:
            return None
        for i, item in enumerate(self._items):
            if item.id == entry_id:
                return i
        return None


class _PendingWrite:
    """An optimistic entry awaiting confirmation."""

    __slots__ = ("table", "fingerprint", "matched_row_id")

    def __init__(self, table: Table, fingerprint: Optional[tuple]) -> None:
        self.table = table
        # None for anonymous rows, which can only be retired by the insert response.
        self.fingerprint = fingerprint
        # Id of the store row that took the provisional entry's place, if any.
        # Only the insert result settles the write; a failure restores the entry.
        self.matched_row_id: Optional[str] = None


class _RoomContext:
    """Everything owned by one activation of one room.

    ``alive`` turns False on teardown; every continuation checks it before
    touching the collections.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.alive = True
        self.subscriptions: List[Subscription] = []
        self.messages: EntryCollection[Message] = EntryCollection()
        self.reactions: EntryCollection[RoomReaction] = EntryCollection()
        self.message_reactions: EntryCollection[MessageReaction] = EntryCollection()
        self.pending: Dict[str, _PendingWrite] = {}

    def collection(self, table: Table) -> EntryCollection:
        if table is Table.MESSAGES:
            return self.messages
        if table is Table.REACTIONS:
            return self.reactions
        return self.message_reactions


def _message_fingerprint(user_id: str, text: str, mentions: List[str], is_host: bool) -> tuple:
    return (Table.MESSAGES, user_id, text, tuple(mentions), is_host)


def _message_reaction_fingerprint(user_id: str, message_id: str, type_: ReactionType) -> tuple:
    return (Table.MESSAGE_REACTIONS, user_id, message_id, type_)


# =============================================================================
# Engine
# =============================================================================


class RoomStateEngine:
    """Owns the three collections of the active room.

    Args:
        transport: Connected or degraded transport.
        local_handle: The local participant's handle.
        one_reaction_per_participant: Reject a local message reaction when
            the local participant already reacted to that message.
        replay_degraded_history: In degraded mode, merge rows shadowed to
            local storage after the system notice.
    """

    def __init__(
        self,
        transport: Transport,
        local_handle: str,
        *,
        one_reaction_per_participant: bool = False,
        replay_degraded_history: bool = False,
    ) -> None:
        self._transport = transport
        self._local_handle = local_handle
        self._one_reaction_per_participant = one_reaction_per_participant
        self._replay_degraded_history = replay_degraded_history
        self._ctx: Optional[_RoomContext] = None
        self._host: Optional[HostInfo] = None
        self._listeners: List[SnapshotListener] = []

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def mode(self) -> TransportMode:
        return self._transport.mode

    @property
    def degraded(self) -> bool:
        return self._transport.mode is TransportMode.DEGRADED

    @property
    def local_handle(self) -> str:
        return self._local_handle

    @property
    def room_id(self) -> Optional[str]:
        return self._ctx.room_id if self._ctx else None

    @property
    def host(self) -> Optional[HostInfo]:
        return self._host

    @property
    def messages(self) -> List[Message]:
        return self._ctx.messages.items() if self._ctx else []

    @property
    def reactions(self) -> List[RoomReaction]:
        return self._ctx.reactions.items() if self._ctx else []

    @property
    def message_reactions(self) -> List[MessageReaction]:
        return self._ctx.message_reactions.items() if self._ctx else []

    @property
    def open_subscriptions(self) -> List[Subscription]:
        if self._ctx is None:
            return []
        return [s for s in self._ctx.subscriptions if s.active]

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.room_id,
            mode=self.mode,
            local_handle=self._local_handle,
            host=self._host,
            messages=self.messages,
            reactions=self.reactions,
            message_reactions=self.message_reactions,
        )

    def add_listener(self, listener: SnapshotListener) -> None:
        """Call *listener* with a fresh snapshot after every change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("[Engine] Snapshot listener failed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def activate(
        self, room_id: str, *, host_display_name: Optional[str] = None
    ) -> RoomSnapshot:
        """Switch to *room_id*: tear down the current room, hydrate, subscribe.

        Args:
            room_id: Room key; surrounding whitespace is ignored.
            host_display_name: Join as host under this name.

        Returns:
            Snapshot after hydration. If another ``activate`` or
            ``deactivate`` happened meanwhile, the snapshot of that newer state.

        Raises:
            ValueError: If *room_id* is blank.
        """
        room_id = room_id.strip()
        if not room_id:
            raise ValueError("room_id must not be empty")

        self.deactivate()

        ctx = _RoomContext(room_id)
        self._ctx = ctx
        host_name = (host_display_name or "").strip()
        self._host = HostInfo(display_name=host_name) if host_name else None
        logger.info(
            "[Engine] Activating room %s (mode=%s, host=%s)",
            room_id, self.mode.value, host_name or "-",
        )

        if self.degraded:
            ctx.messages.merge(self._not_configured_notice(room_id))
            if self._replay_degraded_history:
                await self._hydrate(ctx)
            self._notify()
            return self.snapshot()

        await self._hydrate(ctx)
        if not ctx.alive:
            logger.info("[Engine] Room %s switched away during hydration; not subscribing", room_id)
            return self.snapshot()

        for table in TABLES:
            ctx.subscriptions.append(
                self._transport.subscribe(table, room_id, partial(self._on_feed_row, ctx, table))
            )
        self._notify()
        return self.snapshot()

    def deactivate(self) -> None:
        """Release the active room's feeds and drop its collections."""
        ctx = self._ctx
        if ctx is None:
            return
        ctx.alive = False
        for subscription in ctx.subscriptions:
            subscription.unsubscribe()
        ctx.subscriptions.clear()
        self._ctx = None
        self._host = None
        logger.info("[Engine] Deactivated room %s", ctx.room_id)
        self._notify()

    async def _hydrate(self, ctx: _RoomContext) -> None:
        results = await asyncio.gather(
            *(self._transport.query(table, ctx.room_id) for table in TABLES),
            return_exceptions=True,
        )
        if not ctx.alive:
            logger.info("[Engine] Discarding hydration for inactive room %s", ctx.room_id)
            return

        for table, result in zip(TABLES, results):
            if isinstance(result, BaseException):
                logger.error(
                    "[Engine] Hydration of %s for room %s raised: %r",
                    table.value, ctx.room_id, result,
                )
                continue
            if not result.ok:
                logger.error(
                    "[Engine] Hydration of %s for room %s failed: %s",
                    table.value, ctx.room_id, result.error.message,
                )
                continue
            merged = sum(1 for row in result.data if self._merge_row(ctx, table, row))
            logger.info("[Engine] Hydrated %d %s for room %s", merged, table.value, ctx.room_id)

    def _not_configured_notice(self, room_id: str) -> Message:
        return Message(
            id=NOT_CONFIGURED_NOTICE_ID,
            room_id=room_id,
            text=NOT_CONFIGURED_NOTICE_TEXT,
            created_at=_now(),
            author_handle=SYSTEM_HANDLE,
            is_system=True,
            delivery=DeliveryStatus.LOCAL,
        )

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def _on_feed_row(self, ctx: _RoomContext, table: Table, row: Row) -> None:
        if not ctx.alive:
            logger.debug("[Engine] Dropping %s feed row %s for inactive room %s", table.value, row.id, ctx.room_id)
            return
        if row.room_id != ctx.room_id:
            logger.warning("[Engine] Feed for room %s delivered row of room %s", ctx.room_id, row.room_id)
            return
        if self._merge_row(ctx, table, row):
            self._notify()

    def _merge_row(self, ctx: _RoomContext, table: Table, row: Row) -> bool:
        """Merge one store row into *ctx*; return True if anything changed."""
        entry = self._entry_from_row(table, row)
        collection = ctx.collection(table)
        if entry.id in collection:
            return False

        pending_id = self._match_pending(ctx, table, row)
        if pending_id is not None:
            ctx.pending[pending_id].matched_row_id = entry.id
            logger.debug("[Engine] Feed row %s stands in for provisional %s", entry.id, pending_id)
            return collection.replace(pending_id, entry)

        return collection.merge(entry)

    def _entry_from_row(self, table: Table, row: Row) -> Entry:
        if table is Table.MESSAGES:
            entry = Message.from_row(row, self._local_handle)
        elif table is Table.REACTIONS:
            entry = RoomReaction.from_row(row)
        else:
            entry = MessageReaction.from_row(row)
        if self.degraded:
            # Replayed shadow rows never reached a backing store.
            entry = entry.model_copy(update={"delivery": DeliveryStatus.LOCAL})
        return entry

    def _match_pending(self, ctx: _RoomContext, table: Table, row: Row) -> Optional[str]:
        """Find the provisional entry that *row* confirms, if it is our own write."""
        if not ctx.pending:
            return None
        if isinstance(row, MessageRow):
            fingerprint = _message_fingerprint(row.user_id, row.text, row.mentions, row.is_host)
        elif isinstance(row, MessageReactionRow):
            fingerprint = _message_reaction_fingerprint(row.user_id, row.message_id, row.type)
        else:
            return None
        for pending_id, pending in ctx.pending.items():
            if (
                pending.table is table
                and pending.matched_row_id is None
                and pending.fingerprint == fingerprint
            ):
                return pending_id
        return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _require_room(self) -> _RoomContext:
        if self._ctx is None:
            raise RuntimeError("No active room; call activate() first")
        return self._ctx

    async def send_message(
        self, text: str, options: Optional[SendMessageOptions] = None
    ) -> WriteOutcome:
        """Send a chat message from the local participant.

        ``text`` must be non-empty after trimming; callers check this.

        Raises:
            RuntimeError: If no room is active.
        """
        ctx = self._require_room()
        options = options or SendMessageOptions()

        is_host = options.is_from_host if options.is_from_host is not None else self._host is not None
        host_name = None
        if is_host:
            host_name = options.host_display_name or (self._host.display_name if self._host else None)

        message = Message(
            id=provisional_id(),
            room_id=ctx.room_id,
            text=text,
            created_at=_now(),
            author_handle=self._local_handle,
            is_from_host=is_host,
            host_display_name=host_name,
            mentioned_handles=options.mentioned_handles,
            is_own_message=True,
            delivery=DeliveryStatus.LOCAL if self.degraded else DeliveryStatus.SUBMITTED,
        )
        fingerprint = _message_fingerprint(
            message.author_handle, message.text, message.mentioned_handles, message.is_from_host
        )
        return await self._write(ctx, Table.MESSAGES, message, fingerprint)

    async def add_reaction(self, type_: ReactionType) -> WriteOutcome:
        """Add an anonymous room-wide reaction."""
        ctx = self._require_room()
        reaction = RoomReaction(
            id=provisional_id(),
            room_id=ctx.room_id,
            type=ReactionType(type_),
            created_at=_now(),
            delivery=DeliveryStatus.LOCAL if self.degraded else DeliveryStatus.SUBMITTED,
        )
        return await self._write(ctx, Table.REACTIONS, reaction, None)

    async def add_message_reaction(self, message_id: str, type_: ReactionType) -> WriteOutcome:
        """React to a message.

        Unknown message ids are accepted since the message may still be in
        flight. With ``one_reaction_per_participant`` a second reaction by
        the local participant to the same message is rejected.
        """
        ctx = self._require_room()
        type_ = ReactionType(type_)

        if message_id not in ctx.messages:
            logger.debug("[Engine] Reaction to message %s not (yet) in room %s", message_id, ctx.room_id)

        if self._one_reaction_per_participant and self.has_reacted(message_id):
            logger.info("[Engine] %s already reacted to %s; rejecting", self._local_handle, message_id)
            return WriteOutcome(status=WriteStatus.REJECTED)

        reaction = MessageReaction(
            id=provisional_id(),
            room_id=ctx.room_id,
            message_id=message_id,
            author_handle=self._local_handle,
            type=type_,
            created_at=_now(),
            delivery=DeliveryStatus.LOCAL if self.degraded else DeliveryStatus.SUBMITTED,
        )
        fingerprint = _message_reaction_fingerprint(self._local_handle, message_id, type_)
        return await self._write(ctx, Table.MESSAGE_REACTIONS, reaction, fingerprint)

    def has_reacted(self, message_id: str) -> bool:
        """Whether the local participant has a live reaction on *message_id*."""
        return any(
            r.message_id == message_id
            and r.author_handle == self._local_handle
            and r.delivery is not DeliveryStatus.FAILED
            for r in self.message_reactions
        )

    async def _write(
        self,
        ctx: _RoomContext,
        table: Table,
        entry: Entry,
        fingerprint: Optional[tuple],
    ) -> WriteOutcome:
        collection = ctx.collection(table)
        collection.merge(entry)

        if self.degraded:
            self._notify()
            await self._shadow(table, entry)
            return WriteOutcome(status=WriteStatus.LOCAL, entry=entry)

        ctx.pending[entry.id] = _PendingWrite(table, fingerprint)
        self._notify()

        try:
            result = await self._transport.insert(table, entry.to_row())
        except Exception as e:
            logger.exception("[Engine] Transport raised on %s insert", table.value)
            result = TransportResult(error=TransportError(
                code="unexpected_error", message=str(e) or type(e).__name__, table=table,
            ))
        return self._settle(ctx, table, entry, result)

    def _settle(
        self, ctx: _RoomContext, table: Table, entry: Entry, result: TransportResult
    ) -> WriteOutcome:
        if not result.ok:
            logger.error(
                "[Engine] Write to %s in room %s failed: %s",
                table.value, ctx.room_id, result.error.message,
            )
        if not ctx.alive:
            logger.info("[Engine] Room %s no longer active; not applying %s result", ctx.room_id, table.value)
            if result.ok:
                return WriteOutcome(status=WriteStatus.CONFIRMED, entry=self._entry_from_row(table, result.data))
            return WriteOutcome(status=WriteStatus.FAILED, entry=entry, error=result.error)

        ctx.pending.pop(entry.id, None)
        collection = ctx.collection(table)

        if result.ok:
            confirmed = self._entry_from_row(table, result.data)
            if entry.id in collection:
                collection.replace(entry.id, confirmed)
            else:
                # A matching row took its place; a no-op when that row was our echo.
                collection.merge(confirmed)
            self._notify()
            return WriteOutcome(status=WriteStatus.CONFIRMED, entry=confirmed)

        failed = collection.update(entry.id, delivery=DeliveryStatus.FAILED)
        if failed is None:
            # A look-alike row replaced the provisional entry; it was not ours.
            failed = entry.model_copy(update={"delivery": DeliveryStatus.FAILED})
            collection.merge(failed)
            logger.info("[Engine] Restored failed %s entry %s", table.value, entry.id)
        self._notify()
        return WriteOutcome(status=WriteStatus.FAILED, entry=failed, error=result.error)

    async def _shadow(self, table: Table, entry: Entry) -> None:
        row = {**entry.to_row(), "id": entry.id, "timestamp": entry.created_at.isoformat()}
        result = await self._transport.insert(table, row)
        if not result.ok:
            logger.warning("[Engine] Could not shadow %s %s: %s", table.value, entry.id, result.error.message)
