"""Transport selection.

Chooses the connected Supabase transport when credentials are configured,
otherwise the degraded in-memory transport. Missing credentials are a mode
switch, not an error.
"""
import logging
from typing import Optional

from app.config import RoomSyncConfig
from app.storage import LocalStorage

from .base import Transport
from .degraded import DegradedStore, DegradedTransport
from .supabase import SupabaseTransport

logger = logging.getLogger(__name__)


def build_transport(config: RoomSyncConfig, storage: Optional[LocalStorage] = None) -> Transport:
    """Build the transport for *config*.

    Args:
        config: Loaded application config.
        storage: Local storage used to shadow the degraded store, if any.
    """
    if config.transport_configured:
        supabase = config.secrets.supabase
        logger.info("[Transport] Backing service configured, using %s", supabase.url)
        return SupabaseTransport(supabase.url, supabase.anon_key, config.realtime)

    logger.warning(
        "[Transport] Backing service not configured; running in degraded mode "
        "(writes stay on this device%s)",
        "" if storage is not None else ", memory only",
    )
    return DegradedTransport(DegradedStore(storage))
