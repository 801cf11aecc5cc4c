"""
CLI argument parser, dependency check and exit status tests.
"""

from pathlib import Path
from unittest.mock import Mock, patch
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from netbox_manager.cli import check_runtime_dependencies, main, parse_arguments, print_status  # noqa: E402
from netbox_manager.reconciler import OperationResult, ReconcileState  # noqa: E402


class TestParseArguments:
    def test_enable_with_mode_and_port(self):
        args = parse_arguments(["enable", "--mode", "upstream-raw", "--port", "8081"])

        assert args.command == "enable"
        assert args.mode == "upstream-raw"
        assert args.port == 8081
        assert args.dir is None
        assert args.yes is False

    def test_enable_defaults(self):
        args = parse_arguments(["enable"])

        assert args.mode is None
        assert args.port is None

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            parse_arguments(["enable", "--mode", "fancy"])

    def test_global_flags(self):
        args = parse_arguments(["-d", "/srv/netbox-docker", "--log-level", "debug", "-y", "disable"])

        assert args.dir == Path("/srv/netbox-docker")
        assert args.log_level == "DEBUG"
        assert args.yes is True
        assert args.command == "disable"

    def test_logs_service(self):
        args = parse_arguments(["logs", "netbox", "--tail", "50"])

        assert args.service == "netbox"
        assert args.tail == 50
        assert args.follow is False

    def test_superuser_create(self):
        args = parse_arguments(["superuser", "create", "--username", "ops"])

        assert args.superuser_command == "create"
        assert args.username == "ops"
        assert args.password is None

    def test_superuser_reset(self):
        args = parse_arguments(["superuser", "reset", "admin", "--password", "pw"])

        assert args.superuser_command == "reset"
        assert args.username == "admin"
        assert args.password == "pw"

    def test_superuser_reset_requires_username(self):
        with pytest.raises(SystemExit):
            parse_arguments(["superuser", "reset"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_arguments([])


class TestDependencyChecking:
    def test_skips_check_when_env_var_set(self, monkeypatch):
        monkeypatch.setenv("SKIP_DEPENDENCY_CHECK", "1")

        with patch("subprocess.run") as mock_run:
            check_runtime_dependencies()

        mock_run.assert_not_called()

    def test_missing_docker_is_fatal(self, monkeypatch):
        monkeypatch.delenv("SKIP_DEPENDENCY_CHECK", raising=False)

        with patch("subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(SystemExit):
                check_runtime_dependencies()

    def test_missing_compose_is_fatal(self, monkeypatch):
        monkeypatch.delenv("SKIP_DEPENDENCY_CHECK", raising=False)

        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = [Mock(returncode=0), Mock(returncode=1)]
            with pytest.raises(SystemExit):
                check_runtime_dependencies()

    def test_all_present(self, monkeypatch):
        monkeypatch.delenv("SKIP_DEPENDENCY_CHECK", raising=False)

        with patch("subprocess.run", return_value=Mock(returncode=0)):
            check_runtime_dependencies()


class TestMain:
    @pytest.fixture(autouse=True)
    def _environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SKIP_DEPENDENCY_CHECK", "1")
        monkeypatch.setenv("NETBOX_MANAGER_DIR", str(tmp_path))
        monkeypatch.delenv("NETBOX_MANAGER_CONFIG", raising=False)

    def test_version(self, capsys):
        assert main(["version"]) == 0
        assert capsys.readouterr().out.startswith("netbox-manager ")

    def test_success_exit_code(self, capsys):
        result = OperationResult(ok=True, message="Reconciled", state=ReconcileState.RECONCILED)
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls:
            reconciler_cls.return_value.reconcile.return_value = result
            assert main(["--no-color", "reconcile"]) == 0

        assert "[OK] Reconciled" in capsys.readouterr().out

    def test_failure_prints_step_and_reason(self, capsys):
        result = OperationResult(ok=False, message="write documents: Failed to fetch x", state=ReconcileState.SETTINGS_LOADED)
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls:
            reconciler_cls.return_value.enable.return_value = result
            assert main(["--no-color", "enable", "--mode", "upstream-raw"]) == 1

        reconciler_cls.return_value.enable.assert_called_once_with(mode="upstream-raw", port=None)
        assert "[ERROR] write documents: Failed to fetch x" in capsys.readouterr().out

    def test_disable_requires_confirmation(self):
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls, patch("builtins.input", return_value="n"):
            assert main(["disable"]) == 1

        reconciler_cls.return_value.disable.assert_not_called()

    def test_disable_with_yes(self):
        result = OperationResult(ok=True, message="Slurp'it disabled", state=ReconcileState.RECONCILED)
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls:
            reconciler_cls.return_value.disable.return_value = result
            assert main(["-y", "disable"]) == 0

    def test_directory_flag_reaches_config(self, tmp_path):
        target = tmp_path / "elsewhere"
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls:
            reconciler_cls.return_value.ps.return_value = OperationResult(True, "NAME", ReconcileState.UNINITIALIZED)
            main(["-d", str(target), "ps"])

        config = reconciler_cls.call_args[0][0]
        assert config.netbox_dir == target

    def test_superuser_reset_dispatch(self, capsys):
        result = OperationResult(ok=True, message="Password for 'admin' reset", state=ReconcileState.UNINITIALIZED)
        with patch("netbox_manager.cli.ModeReconciler") as reconciler_cls:
            reconciler_cls.return_value.reset_password.return_value = result
            assert main(["--no-color", "superuser", "reset", "admin", "--password", "pw"]) == 0

        reconciler_cls.return_value.reset_password.assert_called_once_with("admin", "pw")
        assert "[OK] Password for 'admin' reset" in capsys.readouterr().out


def test_status_report_shows_checks(capsys):
    details = {
        "mode": "clean",
        "slurpit_enabled": True,
        "ui_port": 8000,
        "documents": ["docker-compose.yml"],
        "api_reachable": True,
        "api_detail": "HTTP 200",
        "token": True,
        "plugins_registered": True,
        "plugin_imports": {"netbox_secrets": "OK", "slurpit_netbox": "OK"},
        "integration": False,
        "integration_detail": "slurpit-portal: HTTP 000",
        "shared_network": "netbox-docker_default",
        "containers": {},
        "network": {},
    }

    print_status(OperationResult(True, "Mode: clean", ReconcileState.UNINITIALIZED, details), color=False)

    out = capsys.readouterr().out
    assert "Plugin:        OK (2 plugin(s) loaded)" in out
    assert "Slurp'it->API: FAIL (slurpit-portal: HTTP 000)" in out
    assert "Network:       netbox-docker_default" in out
