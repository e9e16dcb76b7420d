"""Configuration loading and validation using Pydantic."""

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


def expand_env_vars(value: str) -> str:
    """Expand ${VAR} style environment variables in a string."""
    pattern = re.compile(r"\$\{([^}]+)\}")

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return pattern.sub(replacer, value)


class StoreConfig(BaseModel):
    """Local store configuration."""

    # None keeps the store in memory for the lifetime of the process
    path: Path | None = Field(default=Path("./instance/RC_Construcoes_DB.sqlite"))
    allow_fallback: bool = True
    backlog_soft_limit: int = Field(default=10_000, gt=0)
    # Defaults to a "snapshots" directory beside the store file
    snapshot_dir: Path | None = None
    max_snapshots: int = Field(default=5, gt=0)
    # Seconds between automatic snapshots, 0 disables them
    snapshot_interval: float = Field(default=86_400.0, ge=0)

    @property
    def snapshot_directory(self) -> Path | None:
        """Where snapshots are written, None for an in-memory store."""
        if self.snapshot_dir is not None:
            return self.snapshot_dir
        if self.path is None:
            return None
        return self.path.parent / "snapshots"


class RemoteConfig(BaseModel):
    """Remote REST API configuration."""

    base_url: str = "http://localhost:3000"
    push_timeout: float = Field(default=15.0, gt=0)
    pull_timeout: float = Field(default=30.0, gt=0)
    pull_page_size: int = Field(default=100, gt=0)
    verify_tls: bool = True

    @field_validator("base_url", mode="before")
    @classmethod
    def expand_env(cls, v: str) -> str:
        """Expand environment variables in the base URL."""
        if isinstance(v, str):
            return expand_env_vars(v).rstrip("/")
        return v


class SyncConfig(BaseModel):
    """Sync engine scheduling configuration."""

    tick_interval: float = Field(default=30.0, gt=0)
    backoff_base: float = Field(default=2.0, gt=0)
    backoff_max: float = Field(default=300.0, gt=0)
    offline_grace: float = Field(default=2.0, ge=0)


class ConnectivityConfig(BaseModel):
    """Connectivity monitor configuration."""

    debounce: float = Field(default=1.0, ge=0)
    probe_enabled: bool = True
    probe_interval: float = Field(default=15.0, gt=0)


class SessionConfig(BaseModel):
    """Session storage configuration."""

    # None keeps the session in memory only
    storage_path: Path | None = Field(default=Path("./instance/session.json"))
    storage_key: str = "rc_auth_token"
    lifetime_minutes: int = Field(default=30, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = True
    level: Literal["DEBUG", "INFO", "WARN", "WARNING", "ERROR"] = "INFO"
    format: Literal["splunk", "json"] = "splunk"
    file: Path | None = None
    # Audit events are also written here when set
    audit_file: Path | None = None


class Config(BaseModel):
    """Root configuration model."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, looks for
                    instance/config.yaml in the current directory.

    Returns:
        Validated Config object.

    Raises:
        ValidationError: If config is invalid.
    """
    if config_path is None:
        config_path = Path("instance/config.yaml")

    if not config_path.exists():
        # Return default config if no file exists
        return Config()

    with open(config_path) as f:
        raw_config = yaml.safe_load(f) or {}

    return Config(**raw_config)


def ensure_directories(config: Config) -> None:
    """Create directories for the store, session and log files."""
    if config.store.path is not None:
        config.store.path.parent.mkdir(parents=True, exist_ok=True)

    if config.store.snapshot_directory is not None:
        config.store.snapshot_directory.mkdir(parents=True, exist_ok=True)

    if config.session.storage_path is not None:
        config.session.storage_path.parent.mkdir(parents=True, exist_ok=True)

    if config.logging.file:
        config.logging.file.parent.mkdir(parents=True, exist_ok=True)

    if config.logging.audit_file:
        config.logging.audit_file.parent.mkdir(parents=True, exist_ok=True)
