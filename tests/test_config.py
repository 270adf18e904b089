"""Tests for configuration loading."""

import pytest

from offsync.config import DEFAULT_RESOURCE_TYPES, Config, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        config = load_config()

        assert isinstance(config, Config)
        assert config.records.resource_types == DEFAULT_RESOURCE_TYPES
        assert config.sync.drain_deadline_seconds is None
        assert config.sync.lock_timeout_seconds is None
        assert config.sync.drain_lock_ttl_seconds == 3600
        assert config.api.port == 8080

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.node.name == "offsync-node"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
node:
  name: sync-1
store:
  db_path: /tmp/changes.db
  completed_retention_days: 7
records:
  resource_types: [earnings, notes]
sync:
  max_workers: 8
  drain_deadline_seconds: 2.5
  lock_timeout_seconds: 0
  drain_lock_ttl_seconds: 600
api:
  port: 9000
"""
        )

        config = load_config(path)

        assert config.node.name == "sync-1"
        assert config.store.db_path == "/tmp/changes.db"
        assert config.store.completed_retention_days == 7
        assert config.records.resource_types == ["earnings", "notes"]
        assert config.records.db_path == "~/.offsync/records.db"
        assert config.sync.max_workers == 8
        assert config.sync.drain_deadline_seconds == 2.5
        assert config.sync.lock_timeout_seconds == 0
        assert config.sync.drain_lock_ttl_seconds == 600
        assert config.api.port == 9000
        assert config.api.host == "127.0.0.1"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path).store.db_path == "~/.offsync/changes.db"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OFFSYNC_NODE_NAME", "env-node")
        monkeypatch.setenv("OFFSYNC_STORE_DB_PATH", ":memory:")
        monkeypatch.setenv("OFFSYNC_RESOURCE_TYPES", "earnings, goals ,")
        monkeypatch.setenv("OFFSYNC_MAX_WORKERS", "2")
        monkeypatch.setenv("OFFSYNC_DRAIN_DEADLINE", "10")
        monkeypatch.setenv("OFFSYNC_LOCK_TIMEOUT", "0.5")
        monkeypatch.setenv("OFFSYNC_DRAIN_LOCK_TTL", "90")
        monkeypatch.setenv("OFFSYNC_API_PORT", "9100")

        config = load_config()

        assert config.node.name == "env-node"
        assert config.store.db_path == ":memory:"
        assert config.records.resource_types == ["earnings", "goals"]
        assert config.sync.max_workers == 2
        assert config.sync.drain_deadline_seconds == 10.0
        assert config.sync.lock_timeout_seconds == 0.5
        assert config.sync.drain_lock_ttl_seconds == 90.0
        assert config.api.port == 9100
