"""Configuration loading for Notention."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.snort.social",
]


@dataclass
class StoreConfig:
    db_path: str = "~/.notention/notention.db"


@dataclass
class RelayConfig:
    """Relay endpoints and per-operation timeouts."""

    urls: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    connect_timeout_seconds: float = 10.0
    publish_timeout_seconds: float = 10.0
    query_timeout_seconds: float = 15.0
    probe_timeout_seconds: float = 5.0


@dataclass
class PrivacyConfig:
    """What a public (kind 1) note may reveal.

    Self-sync and direct-message envelopes are encrypted and always carry
    full content.
    """

    share_public_notes_globally: bool = False
    share_tags_with_public_notes: bool = False
    share_values_with_public_notes: bool = False


@dataclass
class SyncConfig:
    enabled: bool = True
    interval_minutes: int = 5


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    relays: RelayConfig = field(default_factory=RelayConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with NOTENTION_ prefix."""
    return os.environ.get(f"NOTENTION_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    if relays := _get_env("RELAYS"):
        config.relays.urls = [r.strip() for r in relays.split(",") if r.strip()]

    if share_public := _get_env("SHARE_PUBLIC_NOTES"):
        config.privacy.share_public_notes_globally = _is_true(share_public)
    if share_tags := _get_env("SHARE_TAGS"):
        config.privacy.share_tags_with_public_notes = _is_true(share_tags)
    if share_values := _get_env("SHARE_VALUES"):
        config.privacy.share_values_with_public_notes = _is_true(share_values)

    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_minutes = int(sync_interval)

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
        path = Path(config_path).expanduser()
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            if "relays" in data:
                relay_data = data["relays"]
                config.relays = RelayConfig(
                    urls=relay_data.get("urls", config.relays.urls),
                    connect_timeout_seconds=relay_data.get(
                        "connect_timeout_seconds", config.relays.connect_timeout_seconds
                    ),
                    publish_timeout_seconds=relay_data.get(
                        "publish_timeout_seconds", config.relays.publish_timeout_seconds
                    ),
                    query_timeout_seconds=relay_data.get(
                        "query_timeout_seconds", config.relays.query_timeout_seconds
                    ),
                    probe_timeout_seconds=relay_data.get(
                        "probe_timeout_seconds", config.relays.probe_timeout_seconds
                    ),
                )

            if "privacy" in data:
                privacy_data = data["privacy"]
                config.privacy = PrivacyConfig(
                    share_public_notes_globally=privacy_data.get(
                        "share_public_notes_globally",
                        config.privacy.share_public_notes_globally,
                    ),
                    share_tags_with_public_notes=privacy_data.get(
                        "share_tags_with_public_notes",
                        config.privacy.share_tags_with_public_notes,
                    ),
                    share_values_with_public_notes=privacy_data.get(
                        "share_values_with_public_notes",
                        config.privacy.share_values_with_public_notes,
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_minutes=sync_data.get(
                        "interval_minutes", config.sync.interval_minutes
                    ),
                )

    return _apply_env_overrides(config)
