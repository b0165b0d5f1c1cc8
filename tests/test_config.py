"""Tests for configuration loading and environment resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from invoice_deploy.config import environment_settings, get_default_config, load_config
from invoice_deploy.errors import ConfigurationError
from invoice_deploy.models import Environment


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    assert load_config(str(tmp_path / "nope.yaml")) == get_default_config()


def test_invalid_yaml_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "deploy.yaml"
    path.write_text("environments: [unclosed\n")
    assert load_config(str(path)) == get_default_config()


def test_overrides_are_merged(tmp_path: Path) -> None:
    path = tmp_path / "deploy.yaml"
    path.write_text(yaml.safe_dump({
        "services": {"router": "caddy"},
        "health": {"grace_seconds": 2},
    }))

    config = load_config(str(path))

    assert config["services"]["router"] == "caddy"
    assert config["services"]["backend"] == "backend"
    assert config["health"]["grace_seconds"] == 2
    assert config["health"]["stabilize_seconds"] == 5


def test_paths_resolve_against_root(tmp_path: Path) -> None:
    config = get_default_config()
    config["project"]["root"] = str(tmp_path)

    settings = environment_settings(config, Environment.PRODUCTION)

    assert settings.compose_file == tmp_path / "devops" / "prod" / "docker-compose.yaml"
    assert settings.state_file == tmp_path / "devops" / "prod" / ".active"
    assert settings.ui_env_file == tmp_path / "ui" / ".env"
    assert settings.env_dir == tmp_path / "devops" / "prod"


def test_staging_has_no_state_file(tmp_path: Path) -> None:
    config = get_default_config()
    settings = environment_settings(config, Environment.STAGING)
    assert settings.state_file is None


def test_history_can_be_disabled() -> None:
    config = get_default_config()
    config["history"]["enabled"] = False
    assert environment_settings(config, Environment.PRODUCTION).history_database is None


def test_unknown_environment_section() -> None:
    config = get_default_config()
    del config["environments"]["staging"]
    with pytest.raises(ConfigurationError):
        environment_settings(config, Environment.STAGING)
