#!/usr/bin/env python3
"""
Post-wiring checks: is the Slurp'it plugin loaded in NetBox, and can a
Slurp'it container reach the NetBox API over the shared network?

Both checks only read state and never raise for a "no" answer; callers
decide whether a failed check is worth more than a warning.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .api_token import EXEC_TIMEOUT, ExecFn, parse_marker, parse_markers, run_admin_command
from .config_constants import SLURPIT_PLUGIN_MODULE
from .docker import docker_exec
from .http_utils import status_url

logger = logging.getLogger(__name__)

PLUGIN_MARKER = 'NBM_PLUGIN='
REGISTERED_MARKER = 'NBM_REGISTERED='
HTTP_MARKER = 'NBM_HTTP='

# Runs inside a Slurp'it container; the URL travels in the environment
INTEGRATION_COMMAND = [
    'sh', '-c',
    'curl -s -o /dev/null --max-time 5 -w "NBM_HTTP=%{http_code}\\n" "$NBM_URL"',
]


@dataclass
class PluginReport:
    """Outcome of the plugin check. registered is None when NetBox could not be asked."""
    registered: Optional[bool] = None
    imports: Dict[str, str] = field(default_factory=dict)
    error: str = ''

    @property
    def ok(self) -> bool:
        return bool(self.registered) and all(state == 'OK' for state in self.imports.values())


def check_plugins(
    primary_container: str,
    required: str = SLURPIT_PLUGIN_MODULE,
    exec_fn: ExecFn = docker_exec,
) -> PluginReport:
    """
    Ask NetBox which plugins are configured, whether each imports, and
    whether `required` is among them.
    """
    result = run_admin_command(primary_container, 'plugin_status', {'NBM_REQUIRED_PLUGIN': required}, exec_fn)
    if result is None:
        return PluginReport(error=f"no answer from {primary_container} within {EXEC_TIMEOUT}s")

    registered = parse_marker(result.stdout, REGISTERED_MARKER) if result.ok else None
    if registered is None:
        detail = (result.stderr or '').strip().splitlines()
        return PluginReport(error=detail[-1] if detail else f"exit code {result.returncode}")

    imports = {}
    for value in parse_markers(result.stdout, PLUGIN_MARKER):
        name, _, state = value.partition(' ')
        imports[name] = state or 'OK'
    return PluginReport(registered=registered == '1', imports=imports)


def check_integration(
    container: str,
    netbox_url: str,
    exec_fn: ExecFn = docker_exec,
) -> Tuple[bool, str]:
    """
    Request the NetBox API status endpoint from inside a container.

    Any HTTP answer below 500 counts as reachable, matching
    http_utils.check_url_reachable.

    Returns:
        (reachable, detail)
    """
    url = status_url(netbox_url)
    try:
        result = exec_fn(container, INTEGRATION_COMMAND, env={'NBM_URL': url}, timeout=EXEC_TIMEOUT)
    except subprocess.TimeoutExpired:
        return False, f"no answer within {EXEC_TIMEOUT}s"

    code = parse_marker(result.stdout, HTTP_MARKER)
    if code is None:
        detail = (result.stderr or '').strip().splitlines()
        return False, detail[-1] if detail else f"exit code {result.returncode}"
    if not code.isdigit() or code == '000':
        return False, f"{url} unreachable"
    if int(code) >= 500:
        return False, f"HTTP {code}"
    return True, f"HTTP {code}"
