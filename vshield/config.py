"""Load runtime configuration from TOML (e.g. vshield.toml).

Config file is looked up in order:
  1. Path in VSHIELD_CONFIG env var (if set)
  2. vshield.toml in the current working directory

If no file is found, built-in defaults are used. A handful of environment
variables override the file afterwards (VSHIELD_DB_PATH, VSHIELD_REMOTE_URL,
VSHIELD_API_KEY, VSHIELD_ACCESS_TOKEN, VSHIELD_OWNER_ID, VSHIELD_LOG_LEVEL).

Example file:

    [store]
    db_path = "./data/vshield.db"

    [remote]
    base_url = "https://example.supabase.co"
    api_key = "..."
    owner_id = "3f0c..."
    bucket = "evidence"

    [sync]
    probe_interval_seconds = 15
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = "./data/vshield.db"
DEFAULT_BUCKET = "evidence"

_ENV_OVERRIDES = {
    "VSHIELD_DB_PATH": ("store", "db_path"),
    "VSHIELD_REMOTE_URL": ("remote", "base_url"),
    "VSHIELD_API_KEY": ("remote", "api_key"),
    "VSHIELD_ACCESS_TOKEN": ("remote", "access_token"),
    "VSHIELD_OWNER_ID": ("remote", "owner_id"),
    "VSHIELD_LOG_LEVEL": ("logging", "level"),
}


class StoreConfig(BaseModel):
    model_config = {"frozen": True}

    db_path: str = Field(DEFAULT_DB_PATH, description="SQLite file path, or ':memory:'")
    wal: bool = Field(True, description="Use WAL journaling for file databases")


class RemoteConfig(BaseModel):
    model_config = {"frozen": True}

    base_url: str | None = Field(None, description="Backend root URL; sync is disabled when unset")
    api_key: str | None = Field(None, description="Project API key sent with every request")
    access_token: str | None = Field(None, description="Bearer token of the signed-in user")
    owner_id: str | None = Field(None, description="Authenticated owner identifier scoping all queries")
    bucket: str = Field(DEFAULT_BUCKET, description="Object storage bucket for evidence files")
    timeout_seconds: float = Field(30.0, gt=0)


class SyncConfig(BaseModel):
    model_config = {"frozen": True}

    probe_interval_seconds: float = Field(15.0, gt=0, description="Connectivity probe period")
    fetch_chunk_size: int = Field(100, gt=0, description="Parent ids per pull request")


class LoggingConfig(BaseModel):
    model_config = {"frozen": True}

    level: str = Field("INFO")


class VShieldConfig(BaseModel):
    """Top-level configuration. Immutable once loaded."""

    model_config = {"frozen": True}

    store: StoreConfig = Field(default_factory=StoreConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def sync_enabled(self) -> bool:
        return bool(self.remote.base_url and self.remote.owner_id)


def _default_config_paths(env: Mapping[str, str]) -> list[Path]:
    """Return paths to check for vshield.toml (first existing wins)."""
    paths: list[Path] = []
    if env.get("VSHIELD_CONFIG"):
        paths.append(Path(env["VSHIELD_CONFIG"]))
    paths.append(Path.cwd() / "vshield.toml")
    return paths


def _read_toml(paths: list[Path]) -> dict[str, Any]:
    for path in paths:
        if path.is_file():
            with open(path, "rb") as f:
                return tomllib.load(f)
    return {}


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> VShieldConfig:
    """Load configuration from TOML plus environment overrides.

    Args:
        path: Explicit config file. When given, the default search is skipped.
        environ: Environment mapping to read overrides from (defaults to os.environ).

    Raises:
        tomllib.TOMLDecodeError: the file exists but is not valid TOML.
        pydantic.ValidationError: a value has the wrong type.
    """
    env = os.environ if environ is None else environ
    data = _read_toml([path] if path is not None else _default_config_paths(env))
    sections: dict[str, dict[str, Any]] = {
        name: dict(data.get(name) or {}) for name in ("store", "remote", "sync", "logging")
    }
    for var, (section, key) in _ENV_OVERRIDES.items():
        if env.get(var):
            sections[section][key] = env[var]
    return VShieldConfig.model_validate(sections)
