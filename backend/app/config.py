"""RoomSync application configuration.

Loads settings from two YAML files:
  * roomsync.settings.yaml: non-secret configuration
  * roomsync.secrets.yaml: backing-service credentials (never committed)

When the secrets file carries no Supabase URL/key the service runs in
degraded mode: writes stay on this device and no push feed is opened.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomsync.settings.yaml")
SECRETS_FILE  = Path("roomsync.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class SupabaseSecrets(BaseModel):
    url:      str = ""
    anon_key: str = ""


class Secrets(BaseModel):
    supabase: SupabaseSecrets = Field(default_factory=SupabaseSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Device-local key/value storage (identity + degraded-mode shadow)."""
    enabled:   bool = True
    state_dir: str  = ".roomsync"


class IdentitySettings(BaseModel):
    handle_prefix: str = "匿名の参加者#"


class RealtimeSettings(BaseModel):
    heartbeat_interval_seconds: float = 25.0
    reconnect_delay_seconds:    float = 3.0
    request_timeout_seconds:    float = 10.0


class DegradedSettings(BaseModel):
    # Merge rows shadowed to local storage after the system notice on hydration.
    replay_history: bool = False


class ReactionSettings(BaseModel):
    # When true a participant may react to a given message only once.
    one_per_participant: bool = False


class DashboardSettings(BaseModel):
    message_goal:  int = Field(default=500, ge=1)
    reaction_goal: int = Field(default=1000, ge=1)


class RoomSyncConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    identity:  IdentitySettings  = Field(default_factory=IdentitySettings)
    realtime:  RealtimeSettings  = Field(default_factory=RealtimeSettings)
    degraded:  DegradedSettings  = Field(default_factory=DegradedSettings)
    reactions: ReactionSettings  = Field(default_factory=ReactionSettings)
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)

    @field_validator("secrets", mode="before")
    @classmethod
    def _empty_secrets(cls, value: Any) -> Any:
        return value or {}

    @property
    def transport_configured(self) -> bool:
        """True when both the backing-service URL and key are present."""
        supabase = self.secrets.supabase
        return bool(supabase.url.strip() and supabase.anon_key.strip())


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> RoomSyncConfig:
    """Load and merge settings + secrets into a single *RoomSyncConfig*.

    A relative ``storage.state_dir`` is resolved against the directory that
    holds the settings file.
    """
    settings_file = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_file = Path(secrets_path) if secrets_path else settings_file.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_file)
    settings_data["secrets"] = _load_yaml(secrets_file)

    config = RoomSyncConfig(**settings_data)

    state_dir = Path(config.storage.state_dir)
    if not state_dir.is_absolute():
        config.storage.state_dir = str(settings_file.resolve().parent / state_dir)

    logger.info(
        "Config loaded (server=%s:%s, transport_configured=%s, storage.enabled=%s)",
        config.server.host,
        config.server.port,
        config.transport_configured,
        config.storage.enabled,
    )
    return config


_config: Optional[RoomSyncConfig] = None


def get_config() -> RoomSyncConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[RoomSyncConfig]) -> None:
    """Set (or clear) the process-wide config instance."""
    global _config
    _config = config
