"""Configuration loading for offsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_RESOURCE_TYPES = ["earnings", "expenses", "goals", "clients", "invoices"]


@dataclass
class NodeConfig:
    name: str = "offsync-node"


@dataclass
class StoreConfig:
    """Configuration for the change record store."""

    db_path: str = "~/.offsync/changes.db"
    completed_retention_days: int = 30


@dataclass
class RecordsConfig:
    """Configuration for the bundled SQLite record repository."""

    db_path: str = "~/.offsync/records.db"
    resource_types: list[str] = field(default_factory=lambda: list(DEFAULT_RESOURCE_TYPES))


@dataclass
class SyncConfig:
    """Configuration for drain scheduling."""

    max_workers: int = 4
    drain_deadline_seconds: float | None = None  # None: no batch deadline
    lock_timeout_seconds: float | None = None  # None: wait, 0: reject
    drain_lock_ttl_seconds: float | None = 3600  # None: never take over a stale claim


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    records: RecordsConfig = field(default_factory=RecordsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with OFFSYNC_ prefix."""
    return os.environ.get(f"OFFSYNC_{key}", default)


def _optional_seconds(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path
    if retention := _get_env("STORE_RETENTION_DAYS"):
        config.store.completed_retention_days = int(retention)

    if records_path := _get_env("RECORDS_DB_PATH"):
        config.records.db_path = records_path
    if resource_types := _get_env("RESOURCE_TYPES"):
        config.records.resource_types = [
            t.strip() for t in resource_types.split(",") if t.strip()
        ]

    if max_workers := _get_env("MAX_WORKERS"):
        config.sync.max_workers = int(max_workers)
    if deadline := _get_env("DRAIN_DEADLINE"):
        config.sync.drain_deadline_seconds = float(deadline) or None
    if lock_timeout := _get_env("LOCK_TIMEOUT"):
        config.sync.lock_timeout_seconds = _optional_seconds(lock_timeout)
    if drain_lock_ttl := _get_env("DRAIN_LOCK_TTL"):
        config.sync.drain_lock_ttl_seconds = float(drain_lock_ttl) or None

    if host := _get_env("API_HOST"):
        config.api.host = host
    if port := _get_env("API_PORT"):
        config.api.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    completed_retention_days=store_data.get(
                        "completed_retention_days",
                        config.store.completed_retention_days,
                    ),
                )

            if "records" in data:
                records_data = data["records"]
                config.records = RecordsConfig(
                    db_path=records_data.get("db_path", config.records.db_path),
                    resource_types=records_data.get(
                        "resource_types", config.records.resource_types
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                deadline = _optional_seconds(sync_data.get("drain_deadline_seconds"))
                config.sync = SyncConfig(
                    max_workers=sync_data.get("max_workers", config.sync.max_workers),
                    drain_deadline_seconds=deadline or None,
                    lock_timeout_seconds=_optional_seconds(
                        sync_data.get("lock_timeout_seconds")
                    ),
                    drain_lock_ttl_seconds=_optional_seconds(
                        sync_data.get(
                            "drain_lock_ttl_seconds", config.sync.drain_lock_ttl_seconds
                        )
                    ),
                )

            if "api" in data:
                api_data = data["api"]
                config.api = ApiConfig(
                    host=api_data.get("host", config.api.host),
                    port=api_data.get("port", config.api.port),
                )

    return _apply_env_overrides(config)
