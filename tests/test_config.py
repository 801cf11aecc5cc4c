"""
Tool configuration loading tests.
"""

import logging
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from netbox_manager.config import DEFAULT_PLUGINS, ManagerConfig, deep_merge_configs, load_config  # noqa: E402
from netbox_manager.errors import SettingsError  # noqa: E402


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path, environ={})

    assert config.netbox_dir == tmp_path
    assert config.netbox_version == "v4.4.9"
    assert config.plugins == DEFAULT_PLUGINS
    assert config.primary_container == "netbox-docker-netbox-1"
    assert config.settings_path == tmp_path / "netbox-manager.env"


def test_toml_overrides_defaults(tmp_path):
    (tmp_path / "netbox-manager.toml").write_text(
        'netbox_version = "v4.4.10"\n'
        'project_name = "nb"\n'
        "token_attempts = 5\n"
        "token_delay = 1\n"
        "\n"
        "[plugins]\n"
        '"slurpit_netbox==1.2.7" = "slurpit_netbox"\n'
    )

    config = load_config(tmp_path, environ={})

    assert config.netbox_version == "v4.4.10"
    assert config.primary_container == "nb-netbox-1"
    assert config.token_attempts == 5
    assert config.token_delay == 1.0
    assert config.plugins == {"slurpit_netbox==1.2.7": "slurpit_netbox"}


def test_environment_selects_directory_and_log_level(tmp_path):
    config = load_config(environ={"NETBOX_MANAGER_DIR": str(tmp_path), "NETBOX_MANAGER_LOG_LEVEL": "DEBUG"})

    assert config.netbox_dir == tmp_path
    assert config.log_level == "DEBUG"


def test_explicit_config_path(tmp_path):
    config_file = tmp_path / "custom.toml"
    config_file.write_text('shared_network = "nbnet"\n')

    config = load_config(tmp_path, environ={"NETBOX_MANAGER_CONFIG": str(config_file)})

    assert config.shared_network == "nbnet"


def test_unknown_key_warns(tmp_path, caplog):
    (tmp_path / "netbox-manager.toml").write_text('colour = "blue"\n')

    with caplog.at_level(logging.WARNING):
        config = load_config(tmp_path, environ={})

    assert config == ManagerConfig(netbox_dir=tmp_path)
    assert "colour" in caplog.text


def test_wrong_type_rejected(tmp_path):
    (tmp_path / "netbox-manager.toml").write_text('token_attempts = "many"\n')

    with pytest.raises(SettingsError, match="token_attempts"):
        load_config(tmp_path, environ={})


def test_invalid_toml_rejected(tmp_path):
    (tmp_path / "netbox-manager.toml").write_text("this is = = not toml\n")

    with pytest.raises(SettingsError):
        load_config(tmp_path, environ={})


def test_deep_merge_configs():
    merged = deep_merge_configs({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"c": 3}})

    assert merged == {"a": {"b": 1, "c": 3}, "d": 1}
