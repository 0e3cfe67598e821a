"""Palchat application configuration.

Loads settings from two YAML files:
  * palchat.settings.yaml: non-secret configuration
  * palchat.secrets.yaml: secrets (never committed)
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("palchat.settings.yaml")
SECRETS_FILE  = Path("palchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    log_level:       str  = "info"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class StoreSettings(BaseModel):
    db_path:           str = "palchat.duckdb"
    default_page_size: int = Field(default=50, ge=1)
    max_page_size:     int = Field(default=100, ge=1)


class RealtimeSettings(BaseModel):
    """Timing and limits for the realtime core."""
    handshake_timeout_seconds: float = Field(default=15.0, gt=0)
    presence_debounce_ms:      int   = Field(default=300, ge=0)
    typing_timeout_seconds:    float = Field(default=3.0, gt=0)
    max_content_length:        int   = Field(default=10000, ge=1)


class AuthSettings(BaseModel):
    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    user_id_claim: str = "id"

    @field_validator("user_id_claim")
    @classmethod
    def _claim_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_id_claim must not be empty")
        return value.strip()


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    A relative ``store.db_path`` is resolved against the directory of the
    settings file so the database lands next to its configuration.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else SECRETS_FILE

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    db_path = config.store.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute() and settings_path.exists():
        config.store.db_path = str(settings_path.resolve().parent / db_path)

    logger.info(
        "Config loaded (server=%s:%s, db=%s, debounce=%sms, typing_timeout=%ss)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.realtime.presence_debounce_ms,
        config.realtime.typing_timeout_seconds,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (used by tests)."""
    global _config
    _config = None
