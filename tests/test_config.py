"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from rcclient.config import (
    Config,
    ConnectivityConfig,
    LoggingConfig,
    RemoteConfig,
    SessionConfig,
    StoreConfig,
    SyncConfig,
    ensure_directories,
    expand_env_vars,
    load_config,
)


class TestExpandEnvVars:
    """Tests for expand_env_vars function."""

    def test_single_variable(self, monkeypatch):
        """Expand single environment variable."""
        monkeypatch.setenv("TEST_VAR", "test_value")
        assert expand_env_vars("${TEST_VAR}") == "test_value"

    def test_missing_variable(self, monkeypatch):
        """Missing variable expands to empty string."""
        monkeypatch.delenv("NONEXISTENT_VAR", raising=False)
        assert expand_env_vars("${NONEXISTENT_VAR}") == ""

    def test_partial_expansion(self, monkeypatch):
        """Mix of text and variables."""
        monkeypatch.setenv("PORT", "3000")
        assert expand_env_vars("http://server:${PORT}/") == "http://server:3000/"

    def test_no_variables(self):
        """String without variables unchanged."""
        assert expand_env_vars("plain text") == "plain text"


class TestStoreConfig:
    """Tests for StoreConfig model."""

    def test_default_path(self):
        """Default store file lives under instance/."""
        assert StoreConfig().path == Path("./instance/RC_Construcoes_DB.sqlite")

    def test_memory_store(self):
        """A null path selects an in-memory store."""
        assert StoreConfig(path=None).path is None

    def test_backlog_limit_positive(self):
        """Backlog soft limit must be positive."""
        with pytest.raises(ValidationError):
            StoreConfig(backlog_soft_limit=0)


class TestRemoteConfig:
    """Tests for RemoteConfig model."""

    def test_default_timeouts(self):
        """Push and pull timeouts default to 15 and 30 seconds."""
        config = RemoteConfig()
        assert config.push_timeout == 15.0
        assert config.pull_timeout == 30.0

    def test_env_var_expansion(self, monkeypatch):
        """Base URL expands environment variables."""
        monkeypatch.setenv("RC_API", "https://api.rc.example")
        assert RemoteConfig(base_url="${RC_API}").base_url == "https://api.rc.example"

    def test_trailing_slash_stripped(self):
        """Trailing slash is removed from the base URL."""
        assert RemoteConfig(base_url="http://localhost:3000/").base_url == "http://localhost:3000"


class TestSyncConfig:
    """Tests for SyncConfig model."""

    def test_defaults(self):
        """Tick every 30 s, backoff from 2 s up to 5 min."""
        config = SyncConfig()
        assert config.tick_interval == 30.0
        assert config.backoff_base == 2.0
        assert config.backoff_max == 300.0

    def test_tick_must_be_positive(self):
        """A zero tick interval is rejected."""
        with pytest.raises(ValidationError):
            SyncConfig(tick_interval=0)


class TestConnectivityAndSession:
    """Tests for ConnectivityConfig and SessionConfig."""

    def test_debounce_default(self):
        """Connectivity changes are debounced for one second."""
        assert ConnectivityConfig().debounce == 1.0

    def test_session_defaults(self):
        """Session key and lifetime defaults."""
        config = SessionConfig()
        assert config.storage_key == "rc_auth_token"
        assert config.lifetime_minutes == 30


class TestLoggingConfig:
    """Tests for LoggingConfig model."""

    def test_default_enabled(self):
        """Audit logging is enabled by default."""
        assert LoggingConfig().enabled is True

    def test_valid_levels(self):
        """Known levels are accepted."""
        for level in ("DEBUG", "INFO", "WARN", "WARNING", "ERROR"):
            assert LoggingConfig(level=level).level == level

    def test_invalid_format(self):
        """Unknown formats are rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(format="xml")


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_nonexistent_returns_default(self, tmp_path, monkeypatch):
        """Missing config file yields defaults."""
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert isinstance(config, Config)
        assert config.remote.base_url == "http://localhost:3000"

    def test_load_yaml(self, tmp_path, monkeypatch):
        """Values are read from YAML."""
        monkeypatch.setenv("RC_HOST", "api.rc.example")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
store:
  path: ./data/rc.sqlite
  backlog_soft_limit: 500
remote:
  base_url: https://${RC_HOST}/
sync:
  tick_interval: 10
logging:
  format: json
"""
        )

        config = load_config(config_file)

        assert config.store.path == Path("./data/rc.sqlite")
        assert config.store.backlog_soft_limit == 500
        assert config.remote.base_url == "https://api.rc.example"
        assert config.sync.tick_interval == 10
        assert config.logging.format == "json"

    def test_empty_yaml(self, tmp_path):
        """An empty file yields defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        assert load_config(config_file) == Config()


class TestEnsureDirectories:
    """Tests for ensure_directories function."""

    def test_creates_parents(self, tmp_path):
        """Store, session and log directories are created."""
        config = Config(
            store=StoreConfig(path=tmp_path / "db" / "rc.sqlite"),
            session=SessionConfig(storage_path=tmp_path / "session" / "s.json"),
            logging=LoggingConfig(file=tmp_path / "logs" / "rc.log"),
        )

        ensure_directories(config)

        assert (tmp_path / "db").is_dir()
        assert (tmp_path / "session").is_dir()
        assert (tmp_path / "logs").is_dir()

    def test_memory_store_needs_nothing(self, tmp_path):
        """No directories for in-memory store and session."""
        config = Config(store=StoreConfig(path=None), session=SessionConfig(storage_path=None))
        ensure_directories(config)
