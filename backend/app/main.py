"""RoomSync Backend Application.

This is the main entry point for the RoomSync backend service. RoomSync
keeps one participant's view of a chat room (messages, room reactions and
message reactions) consistent with a hosted Supabase store, or with this
device alone when no store is configured.

Modules:
    - room: Room state engine, mentions, dashboard, HTTP/WebSocket surface
    - transport: Supabase REST + realtime adapter and degraded local adapter
    - identity: Persistent pseudonymous participant handle
    - storage: Device-local key/value storage
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import get_config
from app.room.router import router as room_router
from app.room.session import RoomSession, get_session, set_session

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request and connection; websockets logs every frame
# at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomsync.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    session = RoomSession.create(config)
    set_session(session)
    if config.transport_configured:
        logger.info("Supabase configured at %s", config.secrets.supabase.url)
    else:
        logger.warning("Supabase not configured; running in degraded (local-only) mode")

    yield  # Application runs here

    # Shutdown
    await session.aclose()
    set_session(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="RoomSync API",
    description="Single-participant room state service for realtime chat rooms",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(room_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the transport mode once the session is up.
    """
    session = get_session()
    return {
        "status": "ok",
        "mode": session.engine.mode.value if session else None,
        "room_id": session.engine.room_id if session else None,
    }


def run() -> None:
    """Serve the app on the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=config.server.host, port=config.server.port)
