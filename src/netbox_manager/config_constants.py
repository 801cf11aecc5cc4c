#!/usr/bin/env python3
"""
File name and naming constants for netbox-manager.

CRITICAL: This is the SINGLE SOURCE OF TRUTH for generated file names.
All modules MUST import from this file instead of using hardcoded strings.

Layout of the working directory (netbox-docker checkout):
- docker-compose.yml                  = base document (owned by netbox-docker)
- docker-compose.override.yml         = primary override (always authored)
- docker-compose.slurpit.yml          = fetched upstream document (upstream-raw only)
- docker-compose.slurpit.override.yml = raw patch document (upstream-raw only)
- netbox-manager.env                  = persisted deployment settings
"""

# ============================================================================
# Compose documents (CANONICAL - DO NOT HARDCODE)
# ============================================================================

COMPOSE_BASE = 'docker-compose.yml'
COMPOSE_OVERRIDE = 'docker-compose.override.yml'
COMPOSE_RAW_UPSTREAM = 'docker-compose.slurpit.yml'
COMPOSE_RAW_OVERRIDE = 'docker-compose.slurpit.override.yml'

# Raw mode artifacts, removed whenever another mode is active
RAW_ARTIFACTS = (COMPOSE_RAW_UPSTREAM, COMPOSE_RAW_OVERRIDE)

# ============================================================================
# Settings and tool configuration
# ============================================================================

SETTINGS_FILE = 'netbox-manager.env'
TOOL_CONFIG_FILE = 'netbox-manager.toml'

# ============================================================================
# NetBox build context
# ============================================================================

PLUGIN_REQUIREMENTS_FILE = 'plugin_requirements.txt'
PLUGIN_CONFIG_FILE = 'configuration/plugins.py'
PLUGIN_DOCKERFILE = 'Dockerfile-plugins'

# Host directories for upstream-exact volume mounts (relative to working dir)
SLURPIT_HOSTDIR_ROOT = 'slurpit'

# ============================================================================
# Deployment modes
# ============================================================================

MODE_CLEAN = 'clean'
MODE_UPSTREAM_EXACT = 'upstream-exact'
MODE_UPSTREAM_RAW = 'upstream-raw'
MODES = (MODE_CLEAN, MODE_UPSTREAM_EXACT, MODE_UPSTREAM_RAW)
DEFAULT_MODE = MODE_CLEAN

# ============================================================================
# Runtime names
# ============================================================================

NETBOX_SERVICE = 'netbox'
NETBOX_INTERNAL_PORT = 8080
NETBOX_MANAGE_PY = '/opt/netbox/netbox/manage.py'
NETBOX_IMAGE_PATTERN = 'netboxcommunity/netbox'
SLURPIT_IMAGE_PREFIX = 'slurpit/'
SLURPIT_PORTAL_SERVICE = 'slurpit-portal'
SLURPIT_WAREHOUSE_SERVICE = 'slurpit-warehouse'
SLURPIT_PORTAL_INTERNAL_PORT = 80
SLURPIT_WAREHOUSE_INTERNAL_PORT = 3000
SLURPIT_PLUGIN_MODULE = 'slurpit_netbox'
DEFAULT_TOKEN_LABEL = "Slurp'it"


def normalize_mode(value: str) -> str:
    """Lower-case and trim a user-supplied mode string (no validation)."""
    return (value or '').strip().lower()


if __name__ == '__main__':
    # Self-test
    print("=== Compose Documents ===")
    print(f"Base:          {COMPOSE_BASE}")
    print(f"Override:      {COMPOSE_OVERRIDE}")
    print(f"Raw upstream:  {COMPOSE_RAW_UPSTREAM}")
    print(f"Raw override:  {COMPOSE_RAW_OVERRIDE}")
    print(f"Settings file: {SETTINGS_FILE}")
    print(f"Modes:         {', '.join(MODES)}")
