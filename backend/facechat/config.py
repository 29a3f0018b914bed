"""FaceChat application configuration.

Loads settings from two YAML files:
  * facechat.settings.yaml  — non-secret configuration
  * facechat.secrets.yaml   — secrets (never committed)

Both files are optional; every field has a development default.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("facechat.settings.yaml")
SECRETS_FILE  = Path("facechat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None


class JWTSecrets(BaseModel):
    secret_key:         str = "change-me-in-production"
    refresh_secret_key: str = "change-me-too-in-production"
    algorithm:          str = "HS256"


class Secrets(BaseModel):
    aws: AwsSecrets = Field(default_factory=AwsSecrets)
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60 * 24
    refresh_expire_days:  int = 7
    cookie_name:          str = "token"


class InviteSettings(BaseModel):
    ttl_days:      int = 7
    join_url_base: str = "http://localhost:3000/auth/join"

    @field_validator("ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("invites.ttl_days must be positive")
        return value


class StoreSettings(BaseModel):
    """DuckDB location and the bounded retry policy for conflicting writes."""
    db_path:         str   = "facechat.duckdb"
    max_retries:     int   = 3
    retry_backoff_s: float = 0.0


class RealtimeSettings(BaseModel):
    outbound_queue_size:     int   = 256
    send_timeout_seconds:    float = 5.0
    typing_debounce_seconds: float = 2.0
    typing_expiry_seconds:   float = 8.0
    default_page_size:       int   = 50
    max_page_size:           int   = 100


class FaceSettings(BaseModel):
    provider:             Literal["rekognition", "disabled"] = "rekognition"
    region:               str   = "us-east-1"
    similarity_threshold: float = 90.0


class EmailSettings(BaseModel):
    provider: Literal["ses", "log"] = "log"
    sender:   str = "FaceChat <no-reply@facechat.local>"
    region:   str = "us-east-1"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    invites:  InviteSettings   = Field(default_factory=InviteSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    face:     FaceSettings     = Field(default_factory=FaceSettings)
    email:    EmailSettings    = Field(default_factory=EmailSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_file: Path = SETTINGS_FILE,
    secrets_file: Path = SECRETS_FILE,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_data = _load_yaml(settings_file)
    secrets_data  = _load_yaml(secrets_file)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, db=%s, face=%s, email=%s)",
        config.server.host,
        config.server.port,
        config.store.db_path,
        config.face.provider,
        config.email.provider,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
