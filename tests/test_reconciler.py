"""
Mode Reconciler tests: end-to-end runs against the fake docker CLI.
"""

import logging
from pathlib import Path
from unittest.mock import Mock, patch
import shutil
import sys

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from netbox_manager.compose_executor import ComposeExecutor  # noqa: E402
from netbox_manager.compose_writer import ComposeLayerWriter  # noqa: E402
from netbox_manager.config import ManagerConfig  # noqa: E402
from netbox_manager.errors import FetchError  # noqa: E402
from netbox_manager.reconciler import ModeReconciler, ReconcileState  # noqa: E402
from netbox_manager.settings import DeploymentSettings, SettingsStore  # noqa: E402

from fake_docker import FakeDocker  # noqa: E402

PRIMARY = "netbox-docker-netbox-1"
NETWORK = "netbox-docker_default"
LABEL = "Slurp'it"
CREDS = {"SLURPIT_PORTAL_DB_PASSWORD": "portal-pw", "SLURPIT_WAREHOUSE_DB_PASSWORD": "warehouse-pw"}

UPSTREAM = """\
services:
  slurpit-warehouse:
    image: slurpit/warehouse:latest
  slurpit-portal:
    image: slurpit/portal:latest
"""


def simulate_compose_up(fake, workdir):
    """Create/remove containers the way `compose up --remove-orphans` would for the written documents."""
    def on_up():
        if PRIMARY not in fake.containers:
            fake.add_container(PRIMARY, "netbox:v4.4.9-plugins", [NETWORK], ports={8080: 8081})
        services = set()
        for name in ("docker-compose.override.yml", "docker-compose.slurpit.override.yml"):
            path = workdir / name
            if path.exists():
                services |= {s for s in yaml.safe_load(path.read_text())["services"] if s.startswith("slurpit-")}
        for name in list(fake.containers):
            if name.startswith("slurpit-") and name not in services:
                del fake.containers[name]
        for service in sorted(services):
            if service not in fake.containers:
                fake.add_container(service, f"slurpit/{service.split('-', 1)[1]}:latest", ["slurpit_net"])
    return on_up


class Harness:
    def __init__(self, workdir):
        self.workdir = workdir
        self.docker = FakeDocker()
        self.docker.on_up = simulate_compose_up(self.docker, workdir)
        self.fetch = Mock(return_value=UPSTREAM)
        self.secret_generator = Mock(side_effect=lambda: f"generated-{self.secret_generator.call_count}")
        self.config = ManagerConfig(
            netbox_dir=workdir,
            token_attempts=2,
            token_delay=0,
            container_wait_attempts=2,
            container_wait_delay=0,
        )
        self.store = SettingsStore(self.config.settings_path)

    def reconciler(self):
        executor = ComposeExecutor(self.config, self.store)
        writer = ComposeLayerWriter(self.config, executor, fetch=self.fetch)
        return ModeReconciler(
            self.config,
            store=self.store,
            executor=executor,
            writer=writer,
            secret_generator=self.secret_generator,
            sleep=lambda seconds: None,
        )

    def read(self, name):
        return (self.workdir / name).read_text()

    def override(self):
        return yaml.safe_load(self.read("docker-compose.override.yml"))

    def snapshot(self):
        return {p.name: p.read_text() for p in sorted(self.workdir.rglob("*")) if p.is_file()}


@pytest.fixture
def harness(tmp_path):
    (tmp_path / "docker-compose.yml").write_text("services:\n  netbox:\n    image: netboxcommunity/netbox:v4.4.9\n")
    h = Harness(tmp_path)
    with patch("subprocess.run", side_effect=h.docker):
        yield h


class TestScenarioFreshCleanInstall:
    def test_reconcile_writes_port_services_and_credentials(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True, ui_port=8081))

        result = harness.reconciler().reconcile()

        assert result.ok, result.message
        assert result.state == ReconcileState.RECONCILED
        override = harness.override()
        assert override["services"]["netbox"]["ports"] == ["8081:8080"]
        assert "slurpit-portal" in override["services"]
        assert "slurpit-warehouse" in override["services"]

        settings = harness.store.load()
        assert settings.db_credentials["SLURPIT_PORTAL_DB_PASSWORD"]
        assert settings.db_credentials["SLURPIT_WAREHOUSE_DB_PASSWORD"]

    def test_token_is_persisted_and_injected(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        harness.reconciler().reconcile()

        token = harness.store.load().api_token
        assert token == harness.docker.tokens[LABEL]
        env = harness.override()["services"]["slurpit-portal"]["environment"]
        assert env["NETBOX_TOKEN"] == token
        assert env["NETBOX_SYNC_ENABLED"] == "true"
        # initial apply plus re-apply with the new token
        assert len(harness.docker.compose_commands("up")) == 2

    def test_dependent_containers_attached(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        result = harness.reconciler().reconcile()

        assert sorted(result.details["attached"]) == [
            "slurpit-portal", "slurpit-scanner", "slurpit-scraper", "slurpit-warehouse",
        ]
        for name in result.details["attached"]:
            assert NETWORK in harness.docker.containers[name].networks


class TestIdempotence:
    def test_second_reconcile_is_a_noop(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.reconciler().reconcile()
        before = harness.snapshot()
        connects = len(harness.docker.commands("docker", "network", "connect"))
        creates = len(harness.docker.commands("docker", "network", "create"))

        result = harness.reconciler().reconcile()

        assert result.ok
        assert harness.snapshot() == before
        assert len(harness.docker.commands("docker", "network", "connect")) == connects
        assert len(harness.docker.commands("docker", "network", "create")) == creates
        assert result.details["attached"] == []
        assert len(harness.docker.tokens) == 1

    def test_fresh_install_with_slurpit_disabled(self, harness):
        result = harness.reconciler().reconcile()

        assert result.ok
        assert harness.store.exists()
        assert set(harness.override()["services"]) == {"netbox", "netbox-worker", "netbox-housekeeping"}
        assert harness.docker.commands("docker", "exec") == []


class TestCredentialStability:
    def test_existing_credentials_never_regenerated(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True, db_credentials=dict(CREDS)))

        harness.reconciler().reconcile()
        harness.reconciler().reconcile()

        harness.secret_generator.assert_not_called()
        assert harness.store.load().db_credentials == CREDS

    def test_only_missing_credential_generated(self, harness):
        harness.store.save(DeploymentSettings(
            mode="clean",
            slurpit_enabled=True,
            db_credentials={"SLURPIT_PORTAL_DB_PASSWORD": "keep-me"},
        ))

        harness.reconciler().reconcile()

        credentials = harness.store.load().db_credentials
        assert harness.secret_generator.call_count == 1
        assert credentials["SLURPIT_PORTAL_DB_PASSWORD"] == "keep-me"
        assert credentials["SLURPIT_WAREHOUSE_DB_PASSWORD"] == "generated-1"


class TestTokenReuse:
    def test_stored_token_reused_without_rewrite(self, harness):
        harness.docker.tokens[LABEL] = "a" * 40
        harness.store.save(DeploymentSettings(
            mode="clean", slurpit_enabled=True, api_token="a" * 40, db_credentials=dict(CREDS),
        ))

        harness.reconciler().reconcile()

        assert harness.docker.tokens == {LABEL: "a" * 40}
        assert harness.store.load().api_token == "a" * 40
        assert len(harness.docker.compose_commands("up")) == 1


class TestScenarioRawFetchFailure:
    def test_enable_raw_with_unreachable_url_aborts(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.reconciler().reconcile()
        before = harness.read("docker-compose.override.yml")
        ups = len(harness.docker.compose_commands("up"))

        harness.fetch.side_effect = FetchError("https://example.invalid/compose.yml", "connection refused")
        result = harness.reconciler().enable(mode="upstream-raw")

        assert not result.ok
        assert result.message.startswith("write documents: Failed to fetch")
        assert result.state == ReconcileState.SETTINGS_LOADED
        assert not (harness.workdir / "docker-compose.slurpit.override.yml").exists()
        assert harness.read("docker-compose.override.yml") == before
        assert len(harness.docker.compose_commands("up")) == ups


class TestScenarioTokenDeferred:
    def test_unreachable_netbox_defers_token_but_checks_network(self, harness, caplog):
        harness.docker.netbox_ready = False
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        with caplog.at_level(logging.WARNING):
            result = harness.reconciler().reconcile()

        assert result.ok
        assert result.state == ReconcileState.RECONCILED
        assert result.details["token"] is False
        assert harness.store.load().api_token == ""
        assert "deferred" in caplog.text
        assert harness.docker.commands("docker", "network", "connect")

    def test_token_picked_up_on_next_reconcile(self, harness):
        harness.docker.netbox_ready = False
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.reconciler().reconcile()

        harness.docker.netbox_ready = True
        result = harness.reconciler().reconcile()

        assert result.details["token"] is True
        assert harness.store.load().api_token == harness.docker.tokens[LABEL]


class TestModeSwitching:
    def test_raw_then_clean_leaves_no_raw_documents(self, harness):
        reconciler = harness.reconciler()
        assert reconciler.enable(mode="upstream-raw").ok
        assert (harness.workdir / "docker-compose.slurpit.yml").exists()
        assert "slurpit-portal" in harness.docker.containers

        result = reconciler.enable(mode="clean")

        assert result.ok, result.message
        assert not (harness.workdir / "docker-compose.slurpit.yml").exists()
        assert not (harness.workdir / "docker-compose.slurpit.override.yml").exists()
        assert "docker-compose.slurpit" not in harness.read("docker-compose.override.yml")
        assert harness.store.load().mode == "clean"

    def test_enable_sets_port(self, harness):
        result = harness.reconciler().enable(mode="upstream-exact", port=8081)

        assert result.ok, result.message
        settings = harness.store.load()
        assert settings.slurpit_enabled is True
        assert settings.mode == "upstream-exact"
        assert harness.override()["services"]["netbox"]["ports"] == ["8081:8080"]
        assert harness.docker.containers["slurpit-warehouse"]

    def test_enable_rejects_invalid_port(self, harness):
        result = harness.reconciler().enable(port=70000)

        assert not result.ok
        assert result.message.startswith("accept settings:")
        assert not (harness.workdir / "docker-compose.override.yml").exists()

    def test_disable_removes_services(self, harness):
        reconciler = harness.reconciler()
        reconciler.enable(mode="clean")

        result = reconciler.disable()

        assert result.ok
        assert harness.store.load().slurpit_enabled is False
        assert "slurpit-portal" not in harness.override()["services"]
        assert harness.docker.compose_commands("up")[-1][-1] == "--remove-orphans"
        assert not [name for name in harness.docker.containers if name.startswith("slurpit-")]


class TestReadOnlyOperations:
    def test_status_reports_without_changing_anything(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.reconciler().reconcile()
        before = harness.snapshot()
        calls = len(harness.docker.calls)

        with patch("netbox_manager.reconciler.check_url_reachable", return_value=(True, "HTTP 200")):
            result = harness.reconciler().status()

        assert result.ok
        details = result.details
        assert details["mode"] == "clean"
        assert details["documents"] == ["docker-compose.yml", "docker-compose.override.yml"]
        assert details["containers"][PRIMARY] == "running"
        assert details["network"]["slurpit-portal"] is True
        assert details["api_reachable"] is True
        assert details["token"] is True
        assert harness.snapshot() == before
        new_calls = harness.docker.calls[calls:]
        assert not [cmd for cmd in new_calls if cmd[:2] == ["docker", "compose"] or cmd[:2] == ["docker", "network"]]

    def test_urls_use_published_ports(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True, portal_port=8443))
        harness.reconciler().reconcile()

        result = harness.reconciler().urls()

        assert result.details["netbox"] == "http://localhost:8081"
        assert result.details["slurpit-portal"] == "http://localhost:8443"

    def test_create_superuser(self, harness):
        harness.reconciler().reconcile()

        result = harness.reconciler().create_superuser("ops", "ops@example.com", "pw")

        assert result.ok
        assert "ops" in harness.docker.users

    def test_lifecycle_failure_is_reported(self, harness):
        harness.docker._compose = lambda cmd: (1, "", "daemon not running\n")

        result = harness.reconciler().stop()

        assert not result.ok
        assert result.message.startswith("stop stack:")

    def test_reset_password(self, harness):
        harness.reconciler().reconcile()

        result = harness.reconciler().reset_password("admin", "new-secret")

        assert result.ok, result.message
        assert harness.docker.passwords == {"admin": "new-secret"}

    def test_reset_password_for_unknown_user(self, harness):
        harness.reconciler().reconcile()

        result = harness.reconciler().reset_password("ghost", "new-secret")

        assert not result.ok
        assert result.message == "reset password: No NetBox user named 'ghost'"


class TestFilesystemFailure:
    def test_unwritable_document_is_reported_and_rolled_back(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True, ui_port=8000))
        assert harness.reconciler().reconcile().ok
        before = harness.read("docker-compose.override.yml")
        shutil.rmtree(harness.workdir / "configuration")
        (harness.workdir / "configuration").write_text("not a directory\n")
        harness.store.save(harness.store.load().with_changes(ui_port=9000))
        ups = len(harness.docker.compose_commands("up"))

        result = harness.reconciler().reconcile()

        assert not result.ok
        assert result.message.startswith("write documents: Cannot write")
        assert result.state == ReconcileState.SETTINGS_LOADED
        assert harness.read("docker-compose.override.yml") == before
        assert len(harness.docker.compose_commands("up")) == ups

    def test_os_error_becomes_failed_result(self, harness):
        reconciler = harness.reconciler()

        with patch.object(reconciler.writer, "write", side_effect=PermissionError(13, "Permission denied")):
            result = reconciler.reconcile()

        assert not result.ok
        assert result.message == "write documents: [Errno 13] Permission denied"


class TestVerification:
    def test_reconcile_checks_plugins_and_api_from_portal(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        result = harness.reconciler().reconcile()

        assert result.ok
        assert result.details["plugins_registered"] is True
        assert result.details["plugin_imports"] == {"netbox_secrets": "OK", "slurpit_netbox": "OK"}
        assert result.details["integration"] is True
        assert result.details["integration_detail"] == "slurpit-portal: HTTP 200"
        check = [cmd for cmd in harness.docker.commands("docker", "exec") if cmd[-3:-1] == ["sh", "-c"]][0]
        assert check[:5] == ["docker", "exec", "-e", "NBM_URL", "slurpit-portal"]

    def test_missing_plugin_is_only_a_warning(self, harness, caplog):
        harness.docker.plugins = ["netbox_secrets"]
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        with caplog.at_level(logging.WARNING):
            result = harness.reconciler().reconcile()

        assert result.ok
        assert result.state == ReconcileState.RECONCILED
        assert result.details["plugins_registered"] is False
        assert "slurpit_netbox is not in NetBox PLUGINS" in caplog.text

    def test_plugin_import_failure_reported(self, harness, caplog):
        harness.docker.broken_plugins = {"netbox_secrets"}
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        with caplog.at_level(logging.WARNING):
            result = harness.reconciler().reconcile()

        assert result.ok
        assert result.details["plugin_imports"]["netbox_secrets"] == "FAIL ImportError"
        assert "netbox_secrets" in caplog.text

    def test_unready_netbox_skips_checks_with_warnings(self, harness):
        harness.docker.netbox_ready = False
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))

        result = harness.reconciler().reconcile()

        assert result.ok
        assert result.details["plugins_registered"] is None
        assert result.details["plugin_error"] == "service not ready"
        assert result.details["integration"] is False

    def test_status_includes_checks(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.reconciler().reconcile()

        with patch("netbox_manager.reconciler.check_url_reachable", return_value=(True, "HTTP 200")):
            result = harness.reconciler().status()

        assert result.details["plugins_registered"] is True
        assert result.details["integration"] is True


class TestStatusNetwork:
    def test_membership_follows_network_netbox_is_on(self, harness):
        harness.store.save(DeploymentSettings(mode="clean", slurpit_enabled=True))
        harness.docker.add_container(PRIMARY, "netbox:v4.4.9-plugins", ["custom_net"])
        harness.docker.add_container("slurpit-portal", "slurpit/portal:latest", ["custom_net"])
        harness.docker.add_container("slurpit-warehouse", "slurpit/warehouse:latest", ["slurpit_net"])

        with patch("netbox_manager.reconciler.check_url_reachable", return_value=(False, "unreachable")):
            result = harness.reconciler().status()

        assert result.details["shared_network"] == "custom_net"
        assert result.details["network"] == {"slurpit-portal": True, "slurpit-warehouse": False}
        assert harness.docker.commands("docker", "network") == []
