"""Process configuration, read once from the environment at startup."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3001
DEFAULT_LOG_LEVEL = "INFO"


class DataSourceMode(str, Enum):
    SYNTHETIC = "synthetic"
    VENDOR = "vendor"


def _int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable settings. ``mode`` never changes for the life of the process."""

    massive_api_key: str = ""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    stream_queue_capacity: int | None = None  # None: the multiplexer default
    synthetic_seed: int | None = None

    @property
    def mode(self) -> DataSourceMode:
        """Vendor data when a Massive API key is configured, synthetic otherwise."""
        return DataSourceMode.VENDOR if self.massive_api_key else DataSourceMode.SYNTHETIC

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        return cls(
            massive_api_key=env.get("MASSIVE_API_KEY", "").strip(),
            host=env.get("HOST", "").strip() or DEFAULT_HOST,
            port=_int(env, "PORT", DEFAULT_PORT),
            log_level=env.get("LOG_LEVEL", "").strip().upper() or DEFAULT_LOG_LEVEL,
            stream_queue_capacity=_int(env, "STREAM_QUEUE_CAPACITY", None),
            synthetic_seed=_int(env, "SYNTHETIC_SEED", None),
        )
