#!/usr/bin/env python3
"""
NetBox plugin image build context.

The override builds NetBox from Dockerfile-plugins, which installs the
pinned plugin requirements on top of the upstream image. PLUGINS in
configuration/plugins.py must list the same plugins, in the same order.
"""

from __future__ import annotations

from typing import Dict

from .config import ManagerConfig
from .config_constants import PLUGIN_CONFIG_FILE, PLUGIN_DOCKERFILE, PLUGIN_REQUIREMENTS_FILE
from .templating import render_template


def render_requirements(config: ManagerConfig) -> str:
    return ''.join(f"{requirement}\n" for requirement in config.plugins)


def render_build_context(config: ManagerConfig) -> Dict[str, str]:
    """Return {relative path: content} for the plugin build files."""
    modules = list(config.plugins.values())
    return {
        PLUGIN_REQUIREMENTS_FILE: render_requirements(config),
        PLUGIN_CONFIG_FILE: render_template('plugins.py.j2', {'modules': modules}),
        PLUGIN_DOCKERFILE: render_template('Dockerfile-plugins.j2', {
            'netbox_version': config.netbox_version,
            'requirements_file': PLUGIN_REQUIREMENTS_FILE,
        }),
    }
