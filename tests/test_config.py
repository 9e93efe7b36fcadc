"""Tests for configuration loading."""

import pytest

from notention.config import DEFAULT_RELAYS, Config, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        """Test defaults without a file."""
        config = load_config()

        assert isinstance(config, Config)
        assert config.relays.urls == DEFAULT_RELAYS
        assert config.privacy.share_public_notes_globally is False
        assert config.sync.interval_minutes == 5

    def test_yaml_file(self, tmp_path):
        """Test values from a YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "store:\n"
            "  db_path: /tmp/n.db\n"
            "relays:\n"
            "  urls: [wss://one.test, wss://two.test]\n"
            "  query_timeout_seconds: 3\n"
            "privacy:\n"
            "  share_public_notes_globally: true\n"
            "  share_tags_with_public_notes: true\n"
            "sync:\n"
            "  interval_minutes: 1\n"
        )

        config = load_config(path)

        assert config.store.db_path == "/tmp/n.db"
        assert config.relays.urls == ["wss://one.test", "wss://two.test"]
        assert config.relays.query_timeout_seconds == 3
        assert config.relays.publish_timeout_seconds == 10.0
        assert config.privacy.share_public_notes_globally is True
        assert config.privacy.share_tags_with_public_notes is True
        assert config.privacy.share_values_with_public_notes is False
        assert config.sync.interval_minutes == 1

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing file is not an error."""
        config = load_config(tmp_path / "absent.yaml")

        assert config.relays.urls == DEFAULT_RELAYS

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test NOTENTION_* variables win over the file."""
        path = tmp_path / "config.yaml"
        path.write_text("sync:\n  interval_minutes: 30\n")
        monkeypatch.setenv("NOTENTION_RELAYS", "wss://a.test, wss://b.test,")
        monkeypatch.setenv("NOTENTION_SYNC_INTERVAL", "2")
        monkeypatch.setenv("NOTENTION_SHARE_VALUES", "yes")
        monkeypatch.setenv("NOTENTION_SYNC_ENABLED", "false")

        config = load_config(path)

        assert config.relays.urls == ["wss://a.test", "wss://b.test"]
        assert config.sync.interval_minutes == 2
        assert config.sync.enabled is False
        assert config.privacy.share_values_with_public_notes is True

    def test_defaults_not_shared_between_configs(self):
        """Test relay lists are independent copies."""
        a, b = Config(), Config()
        a.relays.urls.append("wss://extra.test")

        assert b.relays.urls == DEFAULT_RELAYS


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "DB_PATH", "RELAYS", "SHARE_PUBLIC_NOTES", "SHARE_TAGS", "SHARE_VALUES",
        "SYNC_ENABLED", "SYNC_INTERVAL",
    ):
        monkeypatch.delenv(f"NOTENTION_{key}", raising=False)
