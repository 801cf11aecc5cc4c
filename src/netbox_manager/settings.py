#!/usr/bin/env python3
"""
Deployment settings store.

The settings file is a flat list of KEY=VALUE lines (comments with '#',
blank lines allowed). It is parsed strictly: any other line is rejected
with its line number, so a damaged file can never be half-interpreted.
The file is rewritten as a whole (temp file + os.replace) on every save.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Tuple

from .config_constants import DEFAULT_MODE, NETBOX_INTERNAL_PORT, NETBOX_SERVICE
from .errors import SettingsError

logger = logging.getLogger(__name__)

LINE_PATTERN = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*)=(.*)$')

# Dependent-service database credentials, generated once per installation
CREDENTIAL_KEYS = (
    'SLURPIT_PORTAL_DB_PASSWORD',
    'SLURPIT_WAREHOUSE_DB_PASSWORD',
)

TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off', ''}


@dataclass
class DeploymentSettings:
    """Persisted deployment choices for one installation."""
    mode: str = DEFAULT_MODE
    slurpit_enabled: bool = False
    ui_port: int = 8000
    timezone: str = 'UTC'
    upstream_url: str = ''
    primary_service_url: str = f"http://{NETBOX_SERVICE}:{NETBOX_INTERNAL_PORT}"
    api_token: str = ''
    sync_enabled: bool = True
    sync_interval_seconds: int = 3600
    portal_port: int = 8081
    warehouse_port: int = 3000
    db_credentials: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, str] = field(default_factory=dict)

    def with_changes(self, **changes) -> "DeploymentSettings":
        """Return a copy with the given fields replaced (maps are copied)."""
        updated = replace(self, **changes)
        if 'db_credentials' not in changes:
            updated.db_credentials = dict(self.db_credentials)
        if 'extra' not in changes:
            updated.extra = dict(self.extra)
        return updated

    @property
    def sync_active(self) -> bool:
        """Sync only runs once a token has been provisioned."""
        return self.sync_enabled and bool(self.api_token)


# settings file key -> (attribute, kind)
KEY_MAP: Dict[str, Tuple[str, str]] = {
    'SLURPIT_MODE': ('mode', 'str'),
    'SLURPIT_ENABLED': ('slurpit_enabled', 'bool'),
    'NETBOX_PORT': ('ui_port', 'port'),
    'TZ': ('timezone', 'str'),
    'SLURPIT_COMPOSE_URL': ('upstream_url', 'str'),
    'NETBOX_URL': ('primary_service_url', 'str'),
    'NETBOX_API_TOKEN': ('api_token', 'str'),
    'SLURPIT_SYNC_ENABLED': ('sync_enabled', 'bool'),
    'SLURPIT_SYNC_INTERVAL': ('sync_interval_seconds', 'positive_int'),
    'SLURPIT_PORTAL_PORT': ('portal_port', 'port'),
    'SLURPIT_WAREHOUSE_PORT': ('warehouse_port', 'port'),
}


def validate_port(value, source: str = 'port') -> int:
    """Return value as an int in 1-65535 or raise SettingsError."""
    try:
        port = int(str(value).strip())
    except ValueError:
        raise SettingsError(f"{source}: '{value}' is not a valid port number") from None
    if not 1 <= port <= 65535:
        raise SettingsError(f"{source}: port {port} is outside 1-65535")
    return port


def _parse_bool(value: str, source: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise SettingsError(f"{source}: '{value}' is not a boolean (use true/false)")


def _parse_positive_int(value: str, source: str) -> int:
    try:
        number = int(value.strip())
    except ValueError:
        raise SettingsError(f"{source}: '{value}' is not an integer") from None
    if number <= 0:
        raise SettingsError(f"{source}: value must be greater than zero, got {number}")
    return number


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_settings_text(text: str, source: str = '<settings>') -> List[Tuple[str, str]]:
    """
    Parse KEY=VALUE text into ordered (key, value) pairs.

    Raises:
        SettingsError: on any line that is not blank, a comment, or KEY=VALUE
    """
    pairs: List[Tuple[str, str]] = []
    for line_num, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue

        match = LINE_PATTERN.match(line)
        if not match:
            raise SettingsError(f"{source}:{line_num}: malformed line (expected KEY=VALUE): {line!r}")

        key, value = match.group(1), _unquote(match.group(2).strip())
        if '\x00' in value:
            raise SettingsError(f"{source}:{line_num}: value for {key} contains a NUL byte")
        pairs.append((key, value))
    return pairs


def settings_from_pairs(pairs: List[Tuple[str, str]], source: str = '<settings>') -> DeploymentSettings:
    """Apply parsed pairs on top of the defaults."""
    settings = DeploymentSettings()
    for key, value in pairs:
        where = f"{source}: {key}"
        if key in KEY_MAP:
            attr, kind = KEY_MAP[key]
            if kind == 'bool':
                setattr(settings, attr, _parse_bool(value, where))
            elif kind == 'port':
                setattr(settings, attr, validate_port(value, where))
            elif kind == 'positive_int':
                setattr(settings, attr, _parse_positive_int(value, where))
            else:
                setattr(settings, attr, value)
        elif key in CREDENTIAL_KEYS:
            if value:
                settings.db_credentials[key] = value
        else:
            logger.debug(f"Ignoring unrecognized settings key: {key}")
            settings.extra[key] = value
    return settings


def _format_value(value) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    text = str(value)
    if '\n' in text or '\r' in text:
        raise SettingsError(f"Refusing to persist a multi-line value: {text!r}")
    return text


def settings_to_text(settings: DeploymentSettings) -> str:
    """Serialize settings to the KEY=VALUE file format."""
    lines = [
        '# netbox-manager deployment settings',
        '# Managed file: rewritten by netbox-manager on every change.',
    ]
    for key, (attr, _kind) in KEY_MAP.items():
        lines.append(f"{key}={_format_value(getattr(settings, attr))}")

    lines.append('')
    lines.append('# Dependent service credentials (generated once, keep stable)')
    for key in CREDENTIAL_KEYS:
        lines.append(f"{key}={_format_value(settings.db_credentials.get(key, ''))}")

    if settings.extra:
        lines.append('')
        lines.append('# Unrecognized keys (preserved)')
        for key in sorted(settings.extra):
            if not LINE_PATTERN.match(f"{key}="):
                raise SettingsError(f"Refusing to persist invalid key: {key!r}")
            lines.append(f"{key}={_format_value(settings.extra[key])}")

    return '\n'.join(lines) + '\n'


class SettingsStore:
    """Load and save DeploymentSettings at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DeploymentSettings:
        """
        Read the settings file, applying defaults for missing keys.

        A missing file yields the defaults (nothing is written).
        """
        if not self.path.exists():
            logger.debug(f"Settings file not found, using defaults: {self.path}")
            return DeploymentSettings()

        try:
            text = self.path.read_text(encoding='utf-8')
        except OSError as e:
            raise SettingsError(f"Cannot read settings file {self.path}: {e}") from e

        return settings_from_pairs(parse_settings_text(text, str(self.path)), str(self.path))

    def save(self, settings: DeploymentSettings) -> None:
        """
        Write all settings atomically (temp file in the same directory + os.replace).

        Raises:
            SettingsError: If the file cannot be written (the previous file is kept)
        """
        content = settings_to_text(settings)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix='.tmp', dir=self.path.parent)
        except OSError as e:
            raise SettingsError(f"Cannot write settings file {self.path}: {e}") from e

        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise SettingsError(f"Cannot write settings file {self.path}: {e}") from e
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug(f"Persisted settings to {self.path}")
