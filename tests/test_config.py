"""Tests for FleetConfig loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from fleetdeck.config import FleetConfig

ENV_VARS = [
    "FLEETDECK_CONFIG",
    "FLEETDECK_HOST",
    "FLEETDECK_PORT",
    "FLEETDECK_STATE_DIR",
    "FLEETDECK_DATA_DIR",
    "FLEETDECK_EVENTS_DB",
    "FLEETDECK_PUBLIC_URL",
    "FLEETDECK_TEAM_NAME",
    "FLEETDECK_PUSH_INTERVAL",
    "FLEETDECK_LOOKBACK_DAYS",
    "FLEETDECK_REAPER_INTERVAL",
    "FLEETDECK_PROBE_TIMEOUT",
    "GITHUB_CLIENT_ID",
    "GITHUB_CLIENT_SECRET",
    "GITHUB_PAT",
    "DASHBOARD_REPO",
    "SESSION_SECRET",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFleetConfigDefaults:
    def test_defaults(self):
        config = FleetConfig()
        assert config.port == 8767
        assert config.push_interval == 2.0
        assert config.lookback_days == 30
        assert config.state_dir == Path.home() / ".claude-teams"
        assert config.events_db == config.data_dir / "events.db"
        assert config.public_url == "http://localhost:8767"
        assert config.auth_mode == "disabled"


class TestFleetConfigLoad:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = FleetConfig.load(tmp_path / "nonexistent.yaml")
        assert config.port == 8767
        assert config.session_secret  # generated

    def test_load_from_yaml_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "port": 9000,
                    "state_dir": str(tmp_path / "teams"),
                    "push_interval": 5,
                    "claim_stale_after": 600,
                    "allowed_permissions": ["admin"],
                    "dashboard_repo": "acme/app",
                    "github_token": "pat",
                }
            )
        )
        config = FleetConfig.load(config_file)
        assert config.port == 9000
        assert config.state_dir == tmp_path / "teams"
        assert config.push_interval == 5.0
        assert config.claim_stale_after == 600.0
        assert config.allowed_permissions == ["admin"]
        assert config.public_url == "http://localhost:9000"
        assert config.auth_mode == "token"

    def test_env_vars_override_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump({"port": 9000, "dashboard_repo": "acme/app"}))
        monkeypatch.setenv("FLEETDECK_PORT", "9100")
        monkeypatch.setenv("DASHBOARD_REPO", "acme/other")
        monkeypatch.setenv("GITHUB_CLIENT_ID", "cid")
        monkeypatch.setenv("GITHUB_CLIENT_SECRET", "csecret")

        config = FleetConfig.load(config_file)
        assert config.port == 9100
        assert config.dashboard_repo == "acme/other"
        assert config.auth_mode == "oauth"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        config_file = tmp_path / "elsewhere.yaml"
        config_file.write_text(yaml.safe_dump({"team_name": "core"}))
        monkeypatch.setenv("FLEETDECK_CONFIG", str(config_file))
        assert FleetConfig.load().team_name == "core"

    def test_malformed_yaml_falls_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("this is: not: valid: yaml: [[[")
        assert FleetConfig.load(config_file).port == 8767

    def test_invalid_number_is_an_error(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEETDECK_PORT", "eighty")
        with pytest.raises(ValueError):
            FleetConfig.load(tmp_path / "nonexistent.yaml")

    def test_session_secret_is_kept(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SESSION_SECRET", "fixed")
        assert FleetConfig.load(tmp_path / "nonexistent.yaml").session_secret == "fixed"
