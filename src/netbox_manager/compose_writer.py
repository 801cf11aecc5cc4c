#!/usr/bin/env python3
"""
Compose Layer Writer: derive the on-disk compose documents from settings.

write() works in three phases:

1. Stage: render every document in memory (including the upstream fetch
   in upstream-raw mode) and parse each one with PyYAML. Nothing on disk
   changes if any of this fails.
2. Commit: write the files whose content differs (primary override
   first), create host directories, remove documents that do not belong
   to the resolved mode.
3. Validate: `docker compose config` over the layered set. On failure the
   previous contents of every managed file are restored.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from .build_context import render_build_context
from .compose_executor import ComposeExecutor
from .config import ManagerConfig
from .config_constants import (
    COMPOSE_OVERRIDE,
    COMPOSE_RAW_OVERRIDE,
    COMPOSE_RAW_UPSTREAM,
    MODE_CLEAN,
    MODE_UPSTREAM_EXACT,
    MODE_UPSTREAM_RAW,
    MODES,
    NETBOX_INTERNAL_PORT,
    PLUGIN_CONFIG_FILE,
    PLUGIN_DOCKERFILE,
    PLUGIN_REQUIREMENTS_FILE,
    RAW_ARTIFACTS,
    SLURPIT_HOSTDIR_ROOT,
    SLURPIT_PORTAL_INTERNAL_PORT,
    SLURPIT_PORTAL_SERVICE,
    SLURPIT_WAREHOUSE_INTERNAL_PORT,
    SLURPIT_WAREHOUSE_SERVICE,
    normalize_mode,
)
from .errors import CommandError, ComposeError, FetchError, SettingsError
from .http_utils import fetch_text
from .settings import CREDENTIAL_KEYS, DeploymentSettings
from .templating import render_template

logger = logging.getLogger(__name__)

# Commit order: the primary override always goes first
MANAGED_FILES = (
    COMPOSE_OVERRIDE,
    COMPOSE_RAW_UPSTREAM,
    COMPOSE_RAW_OVERRIDE,
    PLUGIN_REQUIREMENTS_FILE,
    PLUGIN_CONFIG_FILE,
    PLUGIN_DOCKERFILE,
)

FRAGMENTS = {
    MODE_CLEAN: 'slurpit-clean.yml.j2',
    MODE_UPSTREAM_EXACT: 'slurpit-upstream-exact.yml.j2',
}
NO_FRAGMENT = 'slurpit-none.yml.j2'


@dataclass
class WriteResult:
    """Outcome of one write() call."""
    mode: str
    paths: List[Path] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    hostdirs: List[Path] = field(default_factory=list)


def resolve_mode(mode: Optional[str]) -> str:
    """Map a stored or requested mode to a known one; unknown values fall back to clean."""
    normalized = normalize_mode(mode)
    if normalized in MODES:
        return normalized
    logger.warning(f"Unknown mode '{mode}', falling back to {MODE_CLEAN}")
    return MODE_CLEAN


def collect_hostdirs(document: dict, workdir: Path) -> List[Path]:
    """
    Return host directories referenced by relative bind mounts ('./...') in a compose document.

    Examples:
        >>> collect_hostdirs({'services': {'a': {'volumes': ['./data/db:/db']}}}, Path('/w'))
        [PosixPath('/w/data/db')]
    """
    found: List[Path] = []
    for service in (document.get('services') or {}).values():
        for volume in (service or {}).get('volumes') or []:
            if isinstance(volume, dict):
                source = volume.get('source', '') if volume.get('type') == 'bind' else ''
            else:
                source = str(volume).split(':', 1)[0]
            if source.startswith('./'):
                path = workdir / source[2:]
                if path not in found:
                    found.append(path)
    return found


def create_hostdirs(paths: List[Path]) -> List[Path]:
    """Create missing host directories (mode 0775). Returns the ones created."""
    created = []
    for path in paths:
        if path.exists():
            if not path.is_dir():
                raise ComposeError(f"Host path exists and is not a directory: {path}")
            continue
        path.mkdir(mode=0o775, parents=True, exist_ok=True)
        created.append(path)
        logger.debug(f"Created host directory: {path}")
    return created


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        tmp_path.write_text(content, encoding='utf-8')
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _parse_yaml(name: str, content: str) -> dict:
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ComposeError(f"{name}: generated document is not valid YAML: {e}") from e
    if not isinstance(document, dict):
        raise ComposeError(f"{name}: generated document is not a mapping")
    return document


class ComposeLayerWriter:
    """Render, commit and validate the managed documents for one working directory."""

    def __init__(
        self,
        config: ManagerConfig,
        executor: ComposeExecutor,
        fetch: Callable[[str], str] = fetch_text,
    ) -> None:
        self.config = config
        self.executor = executor
        self.fetch = fetch

    @property
    def workdir(self) -> Path:
        return self.config.netbox_dir

    def _context(self, settings: DeploymentSettings, fragment: str, slurpit_state: str) -> dict:
        return {
            'fragment': fragment,
            'slurpit_state': slurpit_state,
            'netbox_image': f"netbox:{self.config.netbox_version}-plugins",
            'dockerfile': PLUGIN_DOCKERFILE,
            'port_mapping': f"{settings.ui_port}:{NETBOX_INTERNAL_PORT}",
            'shared_network': self.config.shared_network,
            'timezone': settings.timezone,
            'creds': settings.db_credentials,
            'warehouse_port_mapping': f"{settings.warehouse_port}:{SLURPIT_WAREHOUSE_INTERNAL_PORT}",
            'warehouse_internal_port': SLURPIT_WAREHOUSE_INTERNAL_PORT,
            'portal_port_mapping': f"{settings.portal_port}:{SLURPIT_PORTAL_INTERNAL_PORT}",
            'portal_base_url': f"http://localhost:{settings.portal_port}",
            'warehouse_url': f"http://{SLURPIT_WAREHOUSE_SERVICE}:{SLURPIT_WAREHOUSE_INTERNAL_PORT}",
            'netbox_url': settings.primary_service_url,
            'netbox_token': settings.api_token,
            'sync_enabled': settings.sync_active,
            'sync_interval': settings.sync_interval_seconds,
            'hostdir_root': SLURPIT_HOSTDIR_ROOT,
        }

    def _stage_raw(self, settings: DeploymentSettings, context: dict) -> Dict[str, str]:
        url = settings.upstream_url or self.config.upstream_url
        upstream_text = self.fetch(url)
        try:
            upstream = yaml.safe_load(upstream_text)
        except yaml.YAMLError as e:
            raise FetchError(url, f"not valid YAML: {e}") from e
        if not isinstance(upstream, dict) or not isinstance(upstream.get('services'), dict) or not upstream['services']:
            raise FetchError(url, "document has no services mapping")

        services = list(upstream['services'])
        port_mappings = {}
        if SLURPIT_PORTAL_SERVICE in services:
            port_mappings[SLURPIT_PORTAL_SERVICE] = context['portal_port_mapping']
        if SLURPIT_WAREHOUSE_SERVICE in services:
            port_mappings[SLURPIT_WAREHOUSE_SERVICE] = context['warehouse_port_mapping']

        patch = render_template('docker-compose.slurpit.override.yml.j2', dict(
            context,
            services=services,
            port_mappings=port_mappings,
            portal_service=SLURPIT_PORTAL_SERVICE,
            upstream_document=COMPOSE_RAW_UPSTREAM,
            upstream_url=url,
        ))
        if not upstream_text.endswith('\n'):
            upstream_text += '\n'
        return {COMPOSE_RAW_UPSTREAM: upstream_text, COMPOSE_RAW_OVERRIDE: patch}

    def stage(self, settings: DeploymentSettings, mode: str) -> Dict[str, str]:
        """
        Render every document for a resolved mode without touching the disk.

        Raises:
            FetchError: upstream-raw fetch failed or returned no services
            SettingsError: A credential needed by an inlined service is missing
            ComposeError: A rendered document is not a YAML mapping
        """
        if not settings.slurpit_enabled:
            fragment, state = NO_FRAGMENT, 'disabled'
        elif mode == MODE_UPSTREAM_RAW:
            fragment, state = NO_FRAGMENT, f"{mode} (see {COMPOSE_RAW_OVERRIDE})"
        else:
            fragment, state = FRAGMENTS[mode], mode
            missing = [key for key in CREDENTIAL_KEYS if not settings.db_credentials.get(key)]
            if missing:
                raise SettingsError(f"Missing credentials for mode {mode}: {', '.join(missing)}")

        context = self._context(settings, fragment, state)
        staged: Dict[str, str] = {}
        if settings.slurpit_enabled and mode == MODE_UPSTREAM_RAW:
            staged.update(self._stage_raw(settings, context))

        staged[COMPOSE_OVERRIDE] = render_template('docker-compose.override.yml.j2', context)
        staged.update(render_build_context(self.config))

        for name, content in staged.items():
            if name.endswith('.yml'):
                _parse_yaml(name, content)
        return staged

    def _snapshot(self) -> Dict[str, Optional[bytes]]:
        snapshot = {}
        for name in MANAGED_FILES:
            path = self.workdir / name
            try:
                snapshot[name] = path.read_bytes() if path.is_file() else None
            except OSError as e:
                raise ComposeError(f"Cannot read {path}: {e}") from e
        return snapshot

    def _restore(self, snapshot: Dict[str, Optional[bytes]]) -> None:
        failed = []
        for name, content in snapshot.items():
            path = self.workdir / name
            try:
                if content is None:
                    if path.is_file():
                        path.unlink()
                elif not path.is_file() or path.read_bytes() != content:
                    path.write_bytes(content)
            except OSError as e:
                logger.error(f"Could not restore {path}: {e}")
                failed.append(name)
        if failed:
            logger.warning(f"Restored previous compose documents except: {', '.join(failed)}")
        else:
            logger.warning("Restored previous compose documents")

    def write(self, settings: DeploymentSettings, mode: Optional[str] = None) -> WriteResult:
        """
        Bring the managed documents in line with settings (mode defaults to settings.mode).

        Raises:
            FetchError, SettingsError, ComposeError: staging failed, nothing written
            ComposeError: a file could not be written, previous files restored
            ComposeResolveError: compose rejected the layered set, previous files restored
        """
        resolved = resolve_mode(settings.mode if mode is None else mode)
        staged = self.stage(settings, resolved)
        result = WriteResult(mode=resolved)

        snapshot = self._snapshot()
        target: Path = self.workdir
        try:
            for name in MANAGED_FILES:
                path = target = self.workdir / name
                if name in staged:
                    content = staged[name]
                    if snapshot[name] != content.encode('utf-8'):
                        _write_atomic(path, content)
                        result.changed.append(name)
                        logger.info(f"Wrote {name}")
                    else:
                        logger.debug(f"Unchanged: {name}")
                elif name in RAW_ARTIFACTS and path.exists():
                    path.unlink()
                    result.removed.append(name)
                    logger.info(f"Removed {name} (not used by mode {resolved})")

            if settings.slurpit_enabled and resolved == MODE_UPSTREAM_EXACT:
                document = _parse_yaml(COMPOSE_OVERRIDE, staged[COMPOSE_OVERRIDE])
                target = self.workdir / SLURPIT_HOSTDIR_ROOT
                result.hostdirs = create_hostdirs(collect_hostdirs(document, self.workdir))

            effective = settings.with_changes(mode=resolved)
            result.paths = self.executor.compose_files(effective)
            self.executor.resolve(effective)
        except OSError as e:
            self._restore(snapshot)
            raise ComposeError(f"Cannot write {target}: {e}") from e
        except (ComposeError, CommandError):
            self._restore(snapshot)
            raise

        if not result.changed and not result.removed:
            logger.info(f"Compose documents up to date (mode {resolved})")
        return result
