"""Runtime configuration for ridelink."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from ridelink.event_log import DEFAULT_CAPACITY

DEFAULT_AUTH_KEY = b"YEZDI_AUTH_DEFAULT"
DEFAULT_EXPORT_NAME = "ble_logs.txt"


def _default_data_dir() -> Path:
    return Path.home() / ".ridelink"


@dataclass(slots=True)
class LinkConfig:
    """Settings shared by the scanner, the session and the collaborators."""

    adapter: Optional[str] = None
    connect_timeout: float = 10.0
    frame_timeout: float = 5.0
    log_capacity: int = DEFAULT_CAPACITY
    auth_key: bytes = DEFAULT_AUTH_KEY
    data_dir: Path = field(default_factory=_default_data_dir)
    export_name: str = DEFAULT_EXPORT_NAME
    snapshot_queue_size: int = 64

    def __post_init__(self) -> None:
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.frame_timeout <= 0:
            raise ValueError("frame_timeout must be positive")
        if self.log_capacity <= 0:
            raise ValueError("log_capacity must be positive")
        if self.snapshot_queue_size <= 0:
            raise ValueError("snapshot_queue_size must be positive")
        if not self.auth_key:
            raise ValueError("auth_key must not be empty")
        self.data_dir = Path(self.data_dir)

    @property
    def layout_db_path(self) -> Path:
        return self.data_dir / "layouts.sqlite3"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "LinkConfig":
        env = os.environ if environ is None else environ
        config = cls(
            adapter=env.get("RIDELINK_ADAPTER") or None,
            connect_timeout=float(env.get("RIDELINK_CONNECT_TIMEOUT", "10.0")),
            frame_timeout=float(env.get("RIDELINK_FRAME_TIMEOUT", "5.0")),
            log_capacity=int(env.get("RIDELINK_LOG_CAPACITY", str(DEFAULT_CAPACITY))),
            export_name=env.get("RIDELINK_EXPORT_NAME", DEFAULT_EXPORT_NAME),
        )
        if env.get("RIDELINK_AUTH_KEY"):
            config.auth_key = env["RIDELINK_AUTH_KEY"].encode("utf-8")
        if env.get("RIDELINK_DATA_DIR"):
            config.data_dir = Path(env["RIDELINK_DATA_DIR"]).expanduser()
        return config


__all__ = ["LinkConfig", "DEFAULT_AUTH_KEY", "DEFAULT_EXPORT_NAME"]
