"""RoomSession: wires storage, identity, transport and engine together.

One session per process (one process = one participant). A module-level
singleton is initialised in ``app/main.py`` from config.
"""
import logging
from typing import Optional

from app.config import RoomSyncConfig
from app.identity import IdentityProvider
from app.storage import LocalStorage, open_local_storage
from app.transport import Transport, build_transport

from .engine import RoomStateEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_session: Optional["RoomSession"] = None


def get_session() -> Optional["RoomSession"]:
    """Return the global RoomSession, or None if not yet initialised."""
    return _session


def set_session(session: Optional["RoomSession"]) -> None:
    """Set (or clear) the global RoomSession instance."""
    global _session
    _session = session


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class RoomSession:
    """Everything the HTTP surface needs to drive the engine.

    Args:
        config: Loaded application config.
        storage: Device-local storage, or None when volatile.
        identity: Source of the local participant handle.
        transport: Connected or degraded transport.
    """

    def __init__(
        self,
        config: RoomSyncConfig,
        storage: Optional[LocalStorage],
        identity: IdentityProvider,
        transport: Transport,
    ) -> None:
        self.config = config
        self.storage = storage
        self.identity = identity
        self.transport = transport
        self.engine = RoomStateEngine(
            transport,
            identity.get_handle(),
            one_reaction_per_participant=config.reactions.one_per_participant,
            replay_degraded_history=config.degraded.replay_history,
        )

    @classmethod
    def create(cls, config: RoomSyncConfig) -> "RoomSession":
        storage = open_local_storage(config)
        identity = IdentityProvider(storage, prefix=config.identity.handle_prefix)
        transport = build_transport(config, storage)
        session = cls(config, storage, identity, transport)
        logger.info(
            "[Session] Ready: handle=%s mode=%s",
            session.engine.local_handle,
            transport.mode.value,
        )
        return session

    async def aclose(self) -> None:
        self.engine.deactivate()
        await self.transport.aclose()
        logger.info("[Session] Closed")
