"""
Configuration loading and validation for basekit clients.

Settings come from (highest priority first):
- keyword arguments
- an optional YAML file passed to load_settings()
- BASEKIT_* environment variables / .env
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BASEKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    url: str
    api_key: str
    schema_name: str = "public"

    # Realtime reconnect backoff
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_jitter: float = Field(default=0.5, ge=0, le=1)
    heartbeat_interval: float = Field(default=25.0, gt=0)

    # Queries
    query_timeout: Optional[float] = Field(default=None, gt=0)

    # Auth
    auth_refresh_margin: int = Field(default=60, ge=0)
    persist_session: bool = False
    session_file: Path = Path(".basekit-session.json")

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"url must be an http(s) URL, got {value!r}")
        return value.rstrip("/")

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.url}/auth/v1"

    @property
    def realtime_url(self) -> str:
        """Websocket endpoint derived from the base URL (http -> ws)."""
        return "ws" + self.url[len("http"):] + "/realtime/v1/websocket"


def _flatten(data: dict[str, Any]) -> dict[str, Any]:
    """Flatten the optional nested 'reconnect' section of a YAML config."""
    flat = {k: v for k, v in data.items() if k != "reconnect"}
    reconnect = data.get("reconnect") or {}
    for key in ("base_delay", "max_delay", "jitter"):
        if key in reconnect:
            flat[f"reconnect_{key}"] = reconnect[key]
    return flat


def load_settings(path: Path | str | None = None, **overrides: Any) -> ClientSettings:
    """
    Load client settings from an optional YAML file.

    Example file:
        url: https://project.example.co
        api_key: public-anon-key
        reconnect:
          base_delay: 0.5
          max_delay: 20
          jitter: 0.3

    Args:
        path: YAML file path (missing file is ignored)
        **overrides: Explicit values, win over the file

    Returns:
        Validated ClientSettings
    """
    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if path.exists():
            loaded = yaml.safe_load(path.read_text()) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            data = _flatten(loaded)

    data.update({k: v for k, v in overrides.items() if v is not None})
    return ClientSettings(**data)
