"""docspine settings loaded from environment variables and ``.env``.

Every field can be set with a ``DOCSPINE_`` prefixed variable, e.g.
``DOCSPINE_POOL_MAX_SIZE=20`` or ``DOCSPINE_SET_FIELDS_ATOMIC=true``.

Tags:
    settings, configuration, pydantic, environment, docspine
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DocstoreSettings(BaseSettings):
    """Connection, tunnel and engine settings.

    Fields
    ──────
    database_url            : Default connection URI for the CLI
    application_name        : Client identity when the URI does not name one
    infer_application_name  : Fall back to the running executable's name
    pool_min_size           : Connections kept open by the pool
    pool_max_size           : Upper bound on pooled connections
    connect_timeout         : Seconds to wait for the pool to fill / SSH to connect
    ssh_key_file            : Private key used when the URI carries no ssh_pwd
    tunnel_bind_host        : Interface the local forwarding listener binds to
    tunnel_max_connections  : Concurrent forwarded connections per tunnel;
                              a tunnelled pool may not exceed it
    set_fields_atomic       : Apply set_fields in one transaction
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Connection ───────────────────────────────────────────────
    database_url: str | None = None
    application_name: str | None = None
    infer_application_name: bool = True

    # ── Pool ─────────────────────────────────────────────────────
    pool_min_size: int = Field(default=1, ge=0)
    pool_max_size: int = Field(default=10, ge=1)
    connect_timeout: float = Field(default=10.0, gt=0)

    # ── Tunnel ───────────────────────────────────────────────────
    ssh_key_file: Path | None = None
    tunnel_bind_host: str = "127.0.0.1"
    tunnel_max_connections: int = Field(default=32, ge=1)

    # ── Engine ───────────────────────────────────────────────────
    set_fields_atomic: bool = False

    # ── Logging ──────────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"


_settings: DocstoreSettings | None = None


def get_settings() -> DocstoreSettings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = DocstoreSettings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None


__all__ = [
    "DocstoreSettings",
    "get_settings",
    "reset_settings",
]
