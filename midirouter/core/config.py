"""Configuration for the MIDI routing service.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, ValidationError, model_validator

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "midirouter"


class Settings(BaseModel):
    """Pydantic settings for the routing service."""

    api_host: str = "0.0.0.0"
    api_port: int = 3001
    # Port of the native MIDI server on this host
    midi_server_port: int = 7001
    midi_server_pid: int | None = None
    # URL peers should use to reach this instance; derived from the first
    # non-loopback IPv4 address when unset.
    advertise_url: str | None = None
    server_name: str | None = None
    config_dir: Path = DEFAULT_CONFIG_DIR

    request_timeout_s: float = 5.0
    health_timeout_s: float = 1.0

    poll_interval_s: float = 0.05
    reopen_cooldown_s: float = 5.0
    reopen_backoff_max_s: float | None = None
    poll_error_log_window_s: float = 60.0

    discovery_enabled: bool = True
    discovery_port: int = 41234
    broadcast_interval_s: float = 5.0
    server_ttl_s: float = 15.0
    peer_sync_interval_s: float = 30.0

    save_debounce_s: float = 0.1
    log_level: str = "INFO"
    log_buffer_size: int = 1000

    @model_validator(mode="after")
    def _default_backoff_cap(self) -> "Settings":
        # No exponential growth unless a larger cap is configured
        if self.reopen_backoff_max_s is None or self.reopen_backoff_max_s < self.reopen_cooldown_s:
            self.reopen_backoff_max_s = self.reopen_cooldown_s
        return self


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "3001")),
            midi_server_port=int(os.getenv("MIDI_SERVER_PORT", "7001")),
            midi_server_pid=os.getenv("MIDI_SERVER_PID") or None,
            advertise_url=os.getenv("ADVERTISE_URL") or None,
            server_name=os.getenv("SERVER_NAME") or None,
            config_dir=os.getenv("MIDI_SERVER_CONFIG_DIR") or DEFAULT_CONFIG_DIR,
            request_timeout_s=float(os.getenv("REQUEST_TIMEOUT_S", "5.0")),
            health_timeout_s=float(os.getenv("HEALTH_TIMEOUT_S", "1.0")),
            poll_interval_s=float(os.getenv("POLL_INTERVAL_S", "0.05")),
            reopen_cooldown_s=float(os.getenv("REOPEN_COOLDOWN_S", "5.0")),
            reopen_backoff_max_s=os.getenv("REOPEN_BACKOFF_MAX_S") or None,
            poll_error_log_window_s=float(os.getenv("POLL_ERROR_LOG_WINDOW_S", "60")),
            discovery_enabled=_flag("DISCOVERY_ENABLED", "true"),
            discovery_port=int(os.getenv("DISCOVERY_PORT", "41234")),
            broadcast_interval_s=float(os.getenv("BROADCAST_INTERVAL_S", "5")),
            server_ttl_s=float(os.getenv("SERVER_TTL_S", "15")),
            peer_sync_interval_s=float(os.getenv("PEER_SYNC_INTERVAL_S", "30")),
            save_debounce_s=float(os.getenv("SAVE_DEBOUNCE_S", "0.1")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_buffer_size=int(os.getenv("LOG_BUFFER_SIZE", "1000")),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


settings = load_settings()
