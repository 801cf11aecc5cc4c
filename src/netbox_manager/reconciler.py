#!/usr/bin/env python3
"""
Mode Reconciler: bring the documents and the running stack in line with
the stored deployment settings.

Sequence (each step advances `state`; a failure raises ReconcileError
naming the step, and operations turn that into OperationResult(ok=False)):

    uninitialized
      -> settings-loaded     load settings, generate missing credentials
      -> documents-written   ComposeLayerWriter.write()
      -> stack-applied       pull, build, up
      -> token-pending       fetch-or-create the API token (may be deferred)
      -> network-verified    attach Slurp'it containers to the shared network,
                             then check plugins and API reachability (best-effort)
      -> reconciled

Running it again on a reconciled installation changes nothing: documents
are only written when their content differs, credentials are only
generated when missing, and containers already on the network are skipped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .api_token import ensure_superuser, ensure_token, reset_superuser_password
from .compose_executor import ComposeExecutor
from .compose_writer import ComposeLayerWriter, resolve_mode
from .config import ManagerConfig
from .config_constants import (
    NETBOX_INTERNAL_PORT,
    SLURPIT_PLUGIN_MODULE,
    SLURPIT_PORTAL_INTERNAL_PORT,
    SLURPIT_PORTAL_SERVICE,
    SLURPIT_WAREHOUSE_INTERNAL_PORT,
    SLURPIT_WAREHOUSE_SERVICE,
)
from .docker import container_networks, container_status, list_containers, published_port
from .errors import ComposeError, NetboxManagerError, ReconcileError
from .http_utils import check_url_reachable, status_url
from .network import (
    attach,
    detect_dependent_containers,
    detect_primary_container,
    ensure_shared_network,
    select_shared_network,
)
from .retry import poll_until
from .secrets_gen import fill_missing_credentials, generate_secret
from .settings import CREDENTIAL_KEYS, DeploymentSettings, SettingsStore, validate_port
from .verify import check_integration, check_plugins

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    UNINITIALIZED = 'uninitialized'
    SETTINGS_LOADED = 'settings-loaded'
    DOCUMENTS_WRITTEN = 'documents-written'
    STACK_APPLIED = 'stack-applied'
    TOKEN_PENDING = 'token-pending'
    NETWORK_VERIFIED = 'network-verified'
    RECONCILED = 'reconciled'


@dataclass
class OperationResult:
    ok: bool
    message: str
    state: ReconcileState
    details: Dict[str, Any] = field(default_factory=dict)


class ModeReconciler:
    """Entry point for every user-facing operation."""

    def __init__(
        self,
        config: ManagerConfig,
        store: Optional[SettingsStore] = None,
        executor: Optional[ComposeExecutor] = None,
        writer: Optional[ComposeLayerWriter] = None,
        secret_generator: Callable[[], str] = generate_secret,
        token_provider: Callable[..., str] = ensure_token,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store or SettingsStore(config.settings_path)
        self.executor = executor or ComposeExecutor(config, self.store)
        self.writer = writer or ComposeLayerWriter(config, self.executor)
        self.secret_generator = secret_generator
        self.token_provider = token_provider
        self.sleep = sleep
        self.state = ReconcileState.UNINITIALIZED

    # ------------------------------------------------------------------
    # Step plumbing
    # ------------------------------------------------------------------

    def _step(self, name: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ReconcileError:
            raise
        except (NetboxManagerError, OSError) as e:
            logger.error(f"{name} failed: {e}")
            raise ReconcileError(name, e) from e

    def _operation(self, fn: Callable[[], OperationResult]) -> OperationResult:
        try:
            return fn()
        except ReconcileError as e:
            return OperationResult(ok=False, message=str(e), state=self.state)

    # ------------------------------------------------------------------
    # Reconciliation steps
    # ------------------------------------------------------------------

    def load_settings(self) -> DeploymentSettings:
        """Load settings, generating (and persisting) any missing credential."""
        self.state = ReconcileState.UNINITIALIZED
        existed = self.store.exists()
        settings = self._step('load settings', self.store.load)

        generated = fill_missing_credentials(settings.db_credentials, CREDENTIAL_KEYS, self.secret_generator)
        if generated or not existed:
            self._step('save settings', self.store.save, settings)
            logger.info(f"Saved settings to {self.store.path}")

        self.executor.bind(settings)
        self.state = ReconcileState.SETTINGS_LOADED
        return settings

    def _save(self, settings: DeploymentSettings) -> None:
        self._step('save settings', self.store.save, settings)
        self.executor.bind(settings)

    def _write(self, settings: DeploymentSettings) -> None:
        result = self._step('write documents', self.writer.write, settings)
        if result.changed or result.removed:
            logger.info(f"Documents for mode {result.mode}: wrote {len(result.changed)}, removed {len(result.removed)}")
        self.state = ReconcileState.DOCUMENTS_WRITTEN

    def _apply(self, remove_orphans: bool = False, rebuild: bool = True) -> None:
        if rebuild:
            self._step('pull images', self.executor.pull)
            self._step('build image', self.executor.build)
        self._step('start stack', self.executor.up, remove_orphans)
        self.state = ReconcileState.STACK_APPLIED

    def _wait_for_primary(self) -> Optional[str]:
        def check():
            name = detect_primary_container(self.config.primary_container)
            return name is not None, name

        result = self._step(
            'wait for NetBox container',
            poll_until,
            check,
            attempts=self.config.container_wait_attempts,
            delay=self.config.container_wait_delay,
            description='NetBox container',
            sleep=self.sleep,
        )
        if result.timed_out:
            logger.warning(f"NetBox container not visible yet ({result.message}); continuing")
            return None
        logger.info(f"NetBox container: {result.value}")
        return result.value

    def _provision_token(self, settings: DeploymentSettings, primary: Optional[str]) -> DeploymentSettings:
        self.state = ReconcileState.TOKEN_PENDING
        token = ''
        if primary:
            token = self._step(
                'provision token',
                self.token_provider,
                primary,
                self.config.token_label,
                self.config.token_attempts,
                self.config.token_delay,
            )

        if not token:
            logger.warning("API token not available yet; Slurp'it sync is deferred until the next reconcile")
            return settings
        if token == settings.api_token:
            logger.info("API token unchanged")
            return settings

        logger.info("API token changed, updating Slurp'it environment")
        settings = settings.with_changes(api_token=token)
        self._save(settings)
        self._write(settings)
        self._apply(rebuild=False)
        return settings

    def _reconcile_network(self, primary: Optional[str]) -> Tuple[List[str], List[str]]:
        """Returns (dependent containers, containers attached by this run)."""
        dependents = self._step('detect containers', detect_dependent_containers)
        if not dependents:
            logger.warning("No Slurp'it containers running yet; network check skipped")
            return [], []
        if not primary:
            logger.warning("NetBox container not visible; network check skipped")
            return dependents, []

        network = self._step('ensure shared network', ensure_shared_network, primary, self.config.shared_network)
        attached = self._step('attach containers', attach, dependents, network)
        if attached:
            logger.info(f"Attached to '{network}': {', '.join(attached)}")
        else:
            logger.info(f"All Slurp'it containers already on '{network}'")
        return dependents, attached

    def _verify(self, settings: DeploymentSettings, primary: Optional[str], dependents: List[str]) -> Dict[str, Any]:
        """
        Plugin and integration checks. Both are best-effort: a failed check
        is logged and reported in the details, never raised.
        """
        details: Dict[str, Any] = {}
        if primary:
            report = check_plugins(primary)
            details['plugins_registered'] = report.registered
            details['plugin_imports'] = report.imports
            if report.error:
                details['plugin_error'] = report.error
                logger.warning(f"Plugin check not possible: {report.error}")
            elif not report.registered:
                logger.warning(f"{SLURPIT_PLUGIN_MODULE} is not in NetBox PLUGINS")
            elif not report.ok:
                failed = [name for name, state in report.imports.items() if state != 'OK']
                logger.warning(f"NetBox plugins failing to import: {', '.join(failed)}")
            else:
                logger.info(f"NetBox plugins loaded: {', '.join(report.imports)}")

        if dependents:
            source = next((name for name in dependents if SLURPIT_PORTAL_SERVICE in name), dependents[0])
            reachable, detail = check_integration(source, settings.primary_service_url)
            details['integration'] = reachable
            details['integration_detail'] = f"{source}: {detail}"
            if reachable:
                logger.info(f"{source} reaches the NetBox API ({detail})")
            else:
                logger.warning(f"{source} cannot reach the NetBox API: {detail}")
        return details

    def run(self, settings: DeploymentSettings, remove_orphans: bool = False) -> OperationResult:
        """Write, apply, provision and verify for already-loaded settings."""
        self._write(settings)
        self._apply(remove_orphans=remove_orphans)

        details: Dict[str, Any] = {'attached': []}
        if settings.slurpit_enabled:
            primary = self._wait_for_primary()
            settings = self._provision_token(settings, primary)
            dependents, details['attached'] = self._reconcile_network(primary)
            details.update(self._verify(settings, primary, dependents))
        self.state = ReconcileState.NETWORK_VERIFIED

        self.state = ReconcileState.RECONCILED
        details['token'] = bool(settings.api_token)
        mode = resolve_mode(settings.mode) if settings.slurpit_enabled else 'disabled'
        return OperationResult(
            ok=True,
            message=f"Reconciled (Slurp'it: {mode}, NetBox port {settings.ui_port})",
            state=self.state,
            details=details,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def reconcile(self) -> OperationResult:
        """Re-apply the stored settings."""
        return self._operation(lambda: self.run(self.load_settings()))

    def enable(self, mode: Optional[str] = None, port: Optional[int] = None) -> OperationResult:
        """Enable Slurp'it, optionally switching mode and NetBox UI port, then reconcile."""
        def _enable():
            settings = self.load_settings()
            changes: Dict[str, Any] = {'slurpit_enabled': True}
            if mode is not None:
                changes['mode'] = resolve_mode(mode)
            if port is not None:
                changes['ui_port'] = self._step('accept settings', validate_port, port, '--port')

            updated = settings.with_changes(**changes)
            if updated != settings:
                self._save(updated)
                logger.info(f"Slurp'it enabled (mode {resolve_mode(updated.mode)}, port {updated.ui_port})")
            return self.run(updated, remove_orphans=True)

        return self._operation(_enable)

    def disable(self) -> OperationResult:
        """Remove Slurp'it services from the documents and the running stack."""
        def _disable():
            settings = self.load_settings()
            if settings.slurpit_enabled:
                settings = settings.with_changes(slurpit_enabled=False)
                self._save(settings)
            self._write(settings)
            self._step('start stack', self.executor.up, True)
            self.state = ReconcileState.RECONCILED
            return OperationResult(ok=True, message="Slurp'it disabled", state=self.state)

        return self._operation(_disable)

    def status(self) -> OperationResult:
        """Read-only report; nothing is written or started."""
        def _status():
            settings = self._step('load settings', self.store.load)
            details: Dict[str, Any] = {
                'mode': resolve_mode(settings.mode),
                'slurpit_enabled': settings.slurpit_enabled,
                'ui_port': settings.ui_port,
                'token': bool(settings.api_token),
                'credentials': all(settings.db_credentials.get(key) for key in CREDENTIAL_KEYS),
            }

            try:
                details['documents'] = [path.name for path in self.executor.compose_files(settings)]
            except ComposeError as e:
                details['documents'] = []
                details['documents_error'] = str(e)

            containers: Dict[str, Optional[str]] = {}
            membership: Dict[str, bool] = {}
            primary = None
            dependents: List[str] = []
            network = self.config.shared_network
            try:
                running = list_containers(all_states=True)
                primary = detect_primary_container(self.config.primary_container, running)
                if primary:
                    containers[primary] = container_status(primary)
                    network = select_shared_network(primary, self.config.shared_network) or network
                for name in detect_dependent_containers(running):
                    containers[name] = container_status(name)
                    if containers[name] == 'running':
                        dependents.append(name)
                        membership[name] = network in container_networks(name)
            except NetboxManagerError as e:
                details['docker_error'] = str(e)
            details['containers'] = containers
            details['shared_network'] = network
            details['network'] = membership

            if settings.slurpit_enabled and primary and containers.get(primary) == 'running':
                details.update(self._verify(settings, primary, dependents))

            reachable, detail = check_url_reachable(status_url(f"http://localhost:{settings.ui_port}"))
            details['api_reachable'] = reachable
            details['api_detail'] = detail

            return OperationResult(ok=True, message=f"Mode: {details['mode']}", state=self.state, details=details)

        return self._operation(_status)

    def start(self) -> OperationResult:
        def _start():
            self.executor.bind(self._step('load settings', self.store.load))
            self._step('start stack', self.executor.up)
            return OperationResult(ok=True, message="Containers started", state=self.state)

        return self._operation(_start)

    def stop(self) -> OperationResult:
        def _stop():
            self.executor.bind(self._step('load settings', self.store.load))
            self._step('stop stack', self.executor.down)
            return OperationResult(ok=True, message="Containers stopped", state=self.state)

        return self._operation(_stop)

    def restart(self) -> OperationResult:
        def _restart():
            self.executor.bind(self._step('load settings', self.store.load))
            self._step('restart stack', self.executor.restart)
            return OperationResult(ok=True, message="Containers restarted", state=self.state)

        return self._operation(_restart)

    def ps(self) -> OperationResult:
        def _ps():
            self.executor.bind(self._step('load settings', self.store.load))
            output = self._step('list containers', self.executor.ps)
            return OperationResult(ok=True, message=output.rstrip(), state=self.state)

        return self._operation(_ps)

    def logs(self, service: Optional[str] = None, follow: bool = False, tail: Optional[int] = None) -> OperationResult:
        def _logs():
            self.executor.bind(self._step('load settings', self.store.load))
            result = self._step('show logs', self.executor.logs, service, follow, tail)
            return OperationResult(ok=True, message=result.stdout.rstrip(), state=self.state)

        return self._operation(_logs)

    def _require_primary(self) -> str:
        primary = self._step('detect NetBox container', detect_primary_container, self.config.primary_container)
        if primary is None:
            raise ReconcileError('detect NetBox container', NetboxManagerError("NetBox container is not running"))
        return primary

    def create_superuser(self, username: str, email: str, password: str) -> OperationResult:
        def _create():
            primary = self._require_primary()
            created = self._step('create superuser', ensure_superuser, primary, username, email, password)
            message = f"Superuser '{username}' created" if created else f"Superuser '{username}' already exists"
            return OperationResult(ok=True, message=message, state=self.state)

        return self._operation(_create)

    def reset_password(self, username: str, password: str) -> OperationResult:
        """Set a new password for an existing NetBox user."""
        def _reset():
            primary = self._require_primary()
            changed = self._step('reset password', reset_superuser_password, primary, username, password)
            if not changed:
                raise ReconcileError('reset password', NetboxManagerError(f"No NetBox user named '{username}'"))
            return OperationResult(ok=True, message=f"Password for '{username}' reset", state=self.state)

        return self._operation(_reset)

    def urls(self) -> OperationResult:
        """Published URLs from docker inspect, falling back to the configured ports."""
        def _urls():
            settings = self._step('load settings', self.store.load)
            running = self._step('list containers', list_containers)
            primary = detect_primary_container(self.config.primary_container, running)

            port = published_port(primary, NETBOX_INTERNAL_PORT) if primary else None
            found = {'netbox': f"http://localhost:{port or settings.ui_port}"}

            if settings.slurpit_enabled:
                dependents = detect_dependent_containers(running)
                for label, service, internal, fallback in (
                    ('slurpit-portal', SLURPIT_PORTAL_SERVICE, SLURPIT_PORTAL_INTERNAL_PORT, settings.portal_port),
                    ('slurpit-warehouse', SLURPIT_WAREHOUSE_SERVICE, SLURPIT_WAREHOUSE_INTERNAL_PORT, settings.warehouse_port),
                ):
                    container = next((name for name in dependents if service in name), None)
                    port = published_port(container, internal) if container else None
                    found[label] = f"http://localhost:{port or fallback}"

            message = '\n'.join(f"{name}: {url}" for name, url in found.items())
            return OperationResult(ok=True, message=message, state=self.state, details=found)

        return self._operation(_urls)
