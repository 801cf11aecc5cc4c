#!/usr/bin/env python3
"""
Tool configuration for netbox-manager.

Resolution order (later wins):
1. Built-in defaults (ManagerConfig field defaults)
2. netbox-manager.toml in the working directory, or NETBOX_MANAGER_CONFIG
3. NETBOX_MANAGER_DIR / NETBOX_MANAGER_LOG_LEVEL environment variables

The TOML file holds installation constants only. Per-deployment choices
(mode, ports, credentials, token) live in the settings file, see settings.py.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .config_constants import DEFAULT_TOKEN_LABEL, NETBOX_SERVICE, SETTINGS_FILE, TOOL_CONFIG_FILE
from .errors import SettingsError

logger = logging.getLogger(__name__)

DEFAULT_NETBOX_DIR = '/opt/netbox-docker'
DEFAULT_UPSTREAM_URL = 'https://gitlab.com/slurpit.io/images/-/raw/main/docker-compose.yml'

# pip requirement -> Django app module, in PLUGINS order
DEFAULT_PLUGINS = {
    'netbox-secrets==2.4.1': 'netbox_secrets',
    'slurpit_netbox==1.2.7': 'slurpit_netbox',
    'netbox-plugin-dns==1.4.7': 'netbox_dns',
    'netbox-routing==0.3.1': 'netbox_routing',
    'netbox-inventory==2.4.1': 'netbox_inventory',
    'netbox-topology-views==4.4.0': 'netbox_topology_views',
}


@dataclass
class ManagerConfig:
    """Static installation constants."""
    netbox_dir: Path = Path(DEFAULT_NETBOX_DIR)
    netbox_version: str = 'v4.4.9'
    plugins: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PLUGINS))
    upstream_url: str = DEFAULT_UPSTREAM_URL
    project_name: str = 'netbox-docker'
    shared_network: str = 'netbox-docker_default'
    token_label: str = DEFAULT_TOKEN_LABEL
    token_attempts: int = 20
    token_delay: float = 3.0
    container_wait_attempts: int = 30
    container_wait_delay: float = 2.0
    log_level: str = 'INFO'

    @property
    def settings_path(self) -> Path:
        return self.netbox_dir / SETTINGS_FILE

    @property
    def primary_container(self) -> str:
        """Container name compose assigns to the first NetBox replica."""
        return f"{self.project_name}-{NETBOX_SERVICE}-1"


def parse_toml(file_path: Path) -> dict:
    """
    Parse a TOML configuration file with fail-fast error context.
    """
    if not file_path.exists():
        raise FileNotFoundError(f"TOML file not found: {file_path}")

    try:
        with open(file_path, 'rb') as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise SettingsError(f"Failed to parse TOML from {file_path}: {e}") from e


def deep_merge_configs(base: dict, override: dict) -> dict:
    """
    Deep merge two config dicts (key-level, override wins).
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_configs(result[key], value)
        else:
            result[key] = value
    return result


def _coerce(name: str, default: Any, value: Any) -> Any:
    if isinstance(default, Path):
        return Path(value)
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int) and not isinstance(value, int):
        raise SettingsError(f"Config key '{name}' must be an integer, got {value!r}")
    if isinstance(default, float):
        if not isinstance(value, (int, float)):
            raise SettingsError(f"Config key '{name}' must be a number, got {value!r}")
        return float(value)
    if isinstance(default, dict) and not isinstance(value, dict):
        raise SettingsError(f"Config key '{name}' must be a table")
    return value


def load_config(working_dir: Optional[Path] = None, environ: Optional[dict] = None) -> ManagerConfig:
    """
    Build the ManagerConfig from defaults, TOML file and environment.

    Working directory precedence: explicit argument (-d), NETBOX_MANAGER_DIR,
    netbox_dir from the TOML file, built-in default.
    """
    env = os.environ if environ is None else environ
    defaults = ManagerConfig()
    merged: dict = {f.name: getattr(defaults, f.name) for f in fields(ManagerConfig)}

    explicit_dir = Path(working_dir) if working_dir else None
    if explicit_dir is None and env.get('NETBOX_MANAGER_DIR'):
        explicit_dir = Path(env['NETBOX_MANAGER_DIR'])
    search_dir = explicit_dir or defaults.netbox_dir

    if env.get('NETBOX_MANAGER_CONFIG'):
        config_path = Path(env['NETBOX_MANAGER_CONFIG'])
    else:
        config_path = search_dir / TOOL_CONFIG_FILE

    if config_path.exists():
        logger.debug(f"Loading tool config: {config_path}")
        data = parse_toml(config_path)
        for key in sorted(set(data) - set(merged)):
            logger.warning(f"Ignoring unknown key '{key}' in {config_path}")
        known = {k: _coerce(k, merged[k], v) for k, v in data.items() if k in merged}
        if 'plugins' in known:
            # Plugin bundle is replaced, not merged, so entries can be dropped
            merged['plugins'] = dict(known.pop('plugins'))
        merged = deep_merge_configs(merged, known)

    if explicit_dir is not None:
        merged['netbox_dir'] = explicit_dir
    if env.get('NETBOX_MANAGER_LOG_LEVEL'):
        merged['log_level'] = env['NETBOX_MANAGER_LOG_LEVEL']

    return ManagerConfig(**merged)
