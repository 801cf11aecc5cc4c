#!/usr/bin/env python3
"""
Docker Compose executor over the layered document stack.

Document order (later files override earlier ones):
1. docker-compose.yml                   (netbox-docker base, required)
2. docker-compose.override.yml          (if present)
3. docker-compose.slurpit.yml           (upstream-raw mode only)
4. docker-compose.slurpit.override.yml  (upstream-raw mode only)

The list is recomputed from disk on every call; the reconciler may have
rewritten the documents since the previous one.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import ManagerConfig
from .config_constants import (
    COMPOSE_BASE,
    COMPOSE_OVERRIDE,
    COMPOSE_RAW_OVERRIDE,
    COMPOSE_RAW_UPSTREAM,
    MODE_UPSTREAM_RAW,
    normalize_mode,
)
from .docker import CommandResult, run_cmd
from .errors import ComposeError, ComposeResolveError
from .settings import DeploymentSettings, SettingsStore

logger = logging.getLogger(__name__)


class ComposeExecutor:
    """Run docker compose against the current on-disk document set."""

    def __init__(self, config: ManagerConfig, store: SettingsStore) -> None:
        self.config = config
        self.store = store
        self.settings: Optional[DeploymentSettings] = None

    def bind(self, settings: Optional[DeploymentSettings]) -> None:
        """Use an in-memory settings value instead of reading the store on each call."""
        self.settings = settings

    @property
    def workdir(self) -> Path:
        return self.config.netbox_dir

    def compose_files(self, settings: Optional[DeploymentSettings] = None) -> List[Path]:
        """
        Return the ordered compose documents for the current on-disk state.

        Raises:
            ComposeError: If the base document is missing, or raw mode is
                active but its documents have not been written
        """
        base = self.workdir / COMPOSE_BASE
        if not base.exists():
            raise ComposeError(
                f"Base compose file not found: {base} (is netbox-docker checked out in {self.workdir}?)"
            )

        files = [base]
        override = self.workdir / COMPOSE_OVERRIDE
        if override.exists():
            files.append(override)

        if settings is None:
            settings = self.settings if self.settings is not None else self.store.load()
        if settings.slurpit_enabled and normalize_mode(settings.mode) == MODE_UPSTREAM_RAW:
            raw_files = [self.workdir / COMPOSE_RAW_UPSTREAM, self.workdir / COMPOSE_RAW_OVERRIDE]
            missing = [path.name for path in raw_files if not path.exists()]
            if missing:
                raise ComposeError(
                    f"Mode {MODE_UPSTREAM_RAW} is active but {', '.join(missing)} is missing; run reconcile"
                )
            files.extend(raw_files)

        return files

    def _base_cmd(self, files: Optional[Sequence[Path]] = None) -> List[str]:
        cmd = [
            'docker', 'compose',
            '--project-name', self.config.project_name,
            '--project-directory', str(self.workdir),
        ]
        for path in files if files is not None else self.compose_files():
            cmd.extend(['-f', str(path)])
        return cmd

    def _run(self, args: Sequence[str], capture: bool = True, check: bool = True, **kwargs) -> CommandResult:
        cmd = self._base_cmd() + list(args)
        return run_cmd(cmd, cwd=self.workdir, capture=capture, check=check, **kwargs)

    def pull(self) -> None:
        logger.info("Pulling images...")
        self._run(['pull', '--ignore-buildable'], capture=False)

    def build(self) -> None:
        logger.info("Building NetBox image...")
        self._run(['build'], capture=False)

    def up(self, remove_orphans: bool = False) -> None:
        logger.info("Starting containers...")
        args = ['up', '-d']
        if remove_orphans:
            args.append('--remove-orphans')
        self._run(args, capture=False)

    def down(self) -> None:
        logger.info("Stopping containers...")
        self._run(['down'], capture=False)

    def restart(self) -> None:
        logger.info("Restarting containers...")
        self._run(['restart'], capture=False)

    def ps(self) -> str:
        return self._run(['ps']).stdout

    def logs(self, service: Optional[str] = None, follow: bool = False, tail: Optional[int] = None) -> CommandResult:
        args = ['logs']
        if follow:
            args.append('-f')
        if tail is not None:
            args.extend(['--tail', str(int(tail))])
        if service:
            args.append(service)
        return self._run(args, capture=not follow)

    def exec(
        self,
        service: str,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command in a service container; exit status and output are returned, not raised.
        """
        args = ['exec', '-T']
        for name in sorted(env or {}):
            args.extend(['-e', name])
        args.append(service)
        args.extend(command)
        return self._run(args, check=False, env=env, input=stdin)

    def resolve(self, settings: Optional[DeploymentSettings] = None) -> str:
        """
        Validate the layered document set with `docker compose config` (nothing is started).

        Raises:
            ComposeResolveError: Naming the first document whose addition breaks resolution
        """
        files = self.compose_files(settings)
        result = run_cmd(self._base_cmd(files) + ['config'], cwd=self.workdir, check=False)
        if result.ok:
            logger.debug(f"Compose documents resolved: {', '.join(p.name for p in files)}")
            return result.stdout

        reason = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
        offending = files[-1].name
        for count in range(1, len(files)):
            partial = run_cmd(self._base_cmd(files[:count]) + ['config', '--quiet'], cwd=self.workdir, check=False)
            if not partial.ok:
                offending = files[count - 1].name
                break

        raise ComposeResolveError(offending, reason.splitlines()[-1])
