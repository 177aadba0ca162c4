"""Courier application configuration.

Loads settings from two YAML files:
  * courier.settings.yaml: non-secret configuration
  * courier.secrets.yaml: secrets (never committed)

Both paths may be overridden with the COURIER_SETTINGS_FILE and
COURIER_SECRETS_FILE environment variables.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("courier.settings.yaml")
SECRETS_FILE  = Path("courier.secrets.yaml")

# Value shipped in courier.secrets.example.yaml; refused as a real key
EXAMPLE_SECRET_KEY = "replace-with-a-long-random-string"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AuthSecrets(BaseModel):
    secret_key: str = ""


class RedisSecrets(BaseModel):
    password: Optional[str] = None


class Secrets(BaseModel):
    auth:  AuthSecrets  = Field(default_factory=AuthSecrets)
    redis: RedisSecrets = Field(default_factory=RedisSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Durable message log and media storage."""
    db_path:         str = "courier.duckdb"
    media_dir:       str = "media"
    max_image_bytes: int = 10 * 1024 * 1024


class CacheSettings(BaseModel):
    """Ephemeral recent-message cache."""
    backend:     Literal["memory", "redis"] = "memory"
    ttl_seconds: int                        = 3600

    @field_validator("ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl_seconds must be positive")
        return value


class PresenceSettings(BaseModel):
    """Presence set and the shared pub/sub channel."""
    backend:                Literal["local", "redis"] = "local"
    channel:                str                       = "courier:presence"
    chat_channel:           str                       = "courier:chat-events"
    retry_interval_seconds: float                     = 5.0


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379/0"


class TypingSettings(BaseModel):
    throttle_ms: int = 500


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    cache:    CacheSettings    = Field(default_factory=CacheSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    redis:    RedisSettings    = Field(default_factory=RedisSettings)
    typing:   TypingSettings   = Field(default_factory=TypingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)

    @property
    def uses_redis(self) -> bool:
        """True when any component is configured to talk to Redis."""
        return self.cache.backend == "redis" or self.presence.backend == "redis"


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = settings_file or Path(os.environ.get("COURIER_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = secrets_file or Path(os.environ.get("COURIER_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, cache=%s, presence=%s, db=%s)",
        config.server.host,
        config.server.port,
        config.cache.backend,
        config.presence.backend,
        config.storage.db_path,
    )
    return config


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_settings()
