"""
Configuration for the relay and the peer-side transfer engine.

Defaults are plain module constants; ``Settings.from_env`` overlays any
``PEERDROP_*`` environment variables on top of them.
"""

import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

# --- Relay ---
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_RELAY_URL = "ws://localhost:8000/ws"

# --- Negotiation ---
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

# --- Transfer ---
DEFAULT_CHUNK_SIZE = 64 * 1024            # bytes per binary frame
DEFAULT_HIGH_WATER_MARK = 1024 * 1024     # pause sending above this many buffered bytes
DEFAULT_DRAIN_POLL_INTERVAL = 0.01        # seconds between buffer checks while paused

ENV_PREFIX = "PEERDROP_"


class Settings(BaseModel):
    relay_url: str = DEFAULT_RELAY_URL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ice_servers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS), min_length=1
    )
    chunk_size: int = Field(DEFAULT_CHUNK_SIZE, gt=0)
    high_water_mark: int = Field(DEFAULT_HIGH_WATER_MARK, gt=0)
    drain_poll_interval: float = Field(DEFAULT_DRAIN_POLL_INTERVAL, gt=0)
    # Enforced by the CLI, never by the engine
    max_file_size: Optional[int] = Field(None, ge=0)
    warn_file_size: Optional[int] = Field(None, ge=0)
    log_level: str = "INFO"

    @field_validator("ice_servers")
    @classmethod
    def _strip_ice_servers(cls, value: List[str]) -> List[str]:
        servers = [url.strip() for url in value if url.strip()]
        if not servers:
            raise ValueError("at least one ICE server is required")
        return servers

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from PEERDROP_* variables, falling back to defaults"""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "ice_servers":
                values[name] = raw.split(",")
            else:
                values[name] = raw
        return cls(**values)
