#!/usr/bin/env python3
"""
netbox-manager command line interface.

Examples:
  netbox-manager enable --mode clean --port 8081
  netbox-manager reconcile
  netbox-manager status
  netbox-manager -d /srv/netbox-docker logs netbox
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from .cli_utils import BLUE, colorize, format_result_line, format_status_flag, get_cli_version
from .config import load_config
from .config_constants import MODES
from .errors import NetboxManagerError
from .reconciler import ModeReconciler, OperationResult

logger = logging.getLogger(__name__)

MUTATING_COMMANDS = {'enable', 'disable', 'reconcile', 'start', 'stop', 'restart', 'superuser'}


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure logging module with specified level.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }
    level = level_map.get(log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        force=True
    )
    logger.setLevel(level)


def check_runtime_dependencies() -> None:
    """
    Validate that docker, docker compose and the Python libraries are available.

    Exits with status 1 when something is missing.
    """
    if os.getenv('SKIP_DEPENDENCY_CHECK') == '1':
        return

    missing_deps = []

    for cmd, name, install_info in (
        (['docker', '--version'], 'Docker Engine', 'https://docs.docker.com/engine/install/'),
        (['docker', 'compose', 'version'], 'Docker Compose v2', 'https://docs.docker.com/compose/install/'),
    ):
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
            if result.returncode != 0:
                missing_deps.append((' '.join(cmd[:2]), name, install_info))
        except (FileNotFoundError, subprocess.TimeoutExpired):
            missing_deps.append((' '.join(cmd[:2]), name, install_info))

    try:
        import jinja2  # noqa: F401 - Import check only
    except ImportError:
        missing_deps.append(('jinja2', 'Jinja2 template engine', 'pip install jinja2'))

    try:
        import yaml  # noqa: F401 - Import check only
    except ImportError:
        missing_deps.append(('yaml', 'PyYAML', 'pip install PyYAML'))

    try:
        import requests  # noqa: F401 - Import check only
    except ImportError:
        missing_deps.append(('requests', 'requests HTTP client', 'pip install requests'))

    if missing_deps:
        print("[ERROR] Missing required dependencies:", flush=True)
        for cmd, name, install_info in missing_deps:
            print(f"  {name} ({cmd})", flush=True)
            print(f"     Install: {install_info}", flush=True)
        print("\n[ERROR] Cannot continue without required dependencies", flush=True)
        sys.exit(1)


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='netbox-manager',
        description="Manage a netbox-docker installation and its optional Slurp'it stack",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Enable Slurp'it with the self-contained compose fragment
  %(prog)s enable --mode clean

  # Switch to the unmodified upstream compose file, NetBox on port 8081
  %(prog)s enable --mode upstream-raw --port 8081

  # Re-apply stored settings (safe to repeat)
  %(prog)s reconcile

  # Set a new password for an existing NetBox user
  %(prog)s superuser reset admin
        '''
    )
    parser.add_argument(
        '-d', '--dir',
        type=Path,
        default=None,
        metavar='PATH',
        help='netbox-docker working directory (default: NETBOX_MANAGER_DIR or /opt/netbox-docker)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        default=None,
        help='Logging level (default: NETBOX_MANAGER_LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '-y', '--yes',
        action='store_true',
        help='Non-interactive mode (auto-confirm prompts)'
    )
    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True

    enable = sub.add_parser('enable', help="Enable Slurp'it (optionally change mode/port) and reconcile")
    enable.add_argument('--mode', choices=MODES, help='Deployment mode')
    enable.add_argument('--port', type=int, help='NetBox UI host port')

    sub.add_parser('disable', help="Remove Slurp'it services")
    sub.add_parser('reconcile', help='Re-apply stored settings')
    sub.add_parser('status', help='Show mode, documents, containers and API reachability')
    sub.add_parser('start', help='Start containers')
    sub.add_parser('stop', help='Stop containers')
    sub.add_parser('restart', help='Restart containers')
    sub.add_parser('ps', help='List containers')

    logs = sub.add_parser('logs', help='Show container logs')
    logs.add_argument('service', nargs='?', help='Compose service name (default: all)')
    logs.add_argument('-f', '--follow', action='store_true', help='Follow log output')
    logs.add_argument('--tail', type=int, default=None, help='Number of lines from the end')

    superuser = sub.add_parser('superuser', help='NetBox superuser management')
    superuser_sub = superuser.add_subparsers(dest='superuser_command', metavar='ACTION')
    superuser_sub.required = True
    create = superuser_sub.add_parser('create', help='Create a superuser (no-op if it exists)')
    create.add_argument('--username', default='admin')
    create.add_argument('--email', default='admin@example.com')
    create.add_argument('--password', default=None, help='Password (default: NETBOX_MANAGER_SUPERUSER_PASSWORD or prompt)')
    reset = superuser_sub.add_parser('reset', help='Set a new password for an existing user')
    reset.add_argument('username')
    reset.add_argument('--password', default=None, help='New password (default: NETBOX_MANAGER_SUPERUSER_PASSWORD or prompt)')

    sub.add_parser('urls', help='Show published URLs')
    sub.add_parser('version', help='Show version')

    return parser.parse_args(argv)


def _confirm(question: str, yes: bool) -> bool:
    if yes:
        return True
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def _superuser_password(args: argparse.Namespace) -> Optional[str]:
    password = args.password or os.environ.get('NETBOX_MANAGER_SUPERUSER_PASSWORD')
    if password or args.yes:
        return password
    return getpass.getpass(f"Password for {args.username}: ")


def print_status(result: OperationResult, color: bool = True) -> None:
    details = result.details
    print(colorize("NetBox / Slurp'it status", BLUE, color))
    slurpit = details.get('mode') if details.get('slurpit_enabled') else 'disabled'
    print(f"  Slurp'it:      {slurpit}")
    print(f"  NetBox port:   {details.get('ui_port')}")
    print(f"  Documents:     {', '.join(details.get('documents') or []) or '-'}")
    if details.get('documents_error'):
        print(f"                 {details['documents_error']}")
    print(f"  API:           {format_status_flag(details.get('api_reachable'), color)} ({details.get('api_detail')})")
    print(f"  API token:     {format_status_flag(details.get('token') or None, color)}")
    if 'plugins_registered' in details:
        imports = details.get('plugin_imports') or {}
        failing = [name for name, state in imports.items() if state != 'OK']
        if details.get('plugin_error'):
            note = details['plugin_error']
        elif failing:
            note = f"import failed: {', '.join(failing)}"
        else:
            note = f"{len(imports)} plugin(s) loaded"
        registered = details['plugins_registered']
        flag = None if registered is None else registered and not failing
        print(f"  Plugin:        {format_status_flag(flag, color)} ({note})")
    if 'integration' in details:
        print(f"  Slurp'it->API: {format_status_flag(details['integration'], color)} ({details.get('integration_detail')})")
    if details.get('shared_network'):
        print(f"  Network:       {details['shared_network']}")
    if details.get('docker_error'):
        print(f"  Docker:        {details['docker_error']}")
    for name, state in (details.get('containers') or {}).items():
        on_network = details.get('network', {}).get(name)
        suffix = '' if on_network is None else f", shared network {format_status_flag(on_network, color)}"
        print(f"  {name:<28} {state or 'unknown'}{suffix}")


def dispatch(args: argparse.Namespace, reconciler: ModeReconciler) -> Optional[OperationResult]:
    command = args.command
    if command == 'enable':
        return reconciler.enable(mode=args.mode, port=args.port)
    if command == 'disable':
        if not _confirm("Remove Slurp'it services?", args.yes):
            print("Aborted")
            return None
        return reconciler.disable()
    if command == 'reconcile':
        return reconciler.reconcile()
    if command == 'status':
        return reconciler.status()
    if command == 'start':
        return reconciler.start()
    if command == 'stop':
        return reconciler.stop()
    if command == 'restart':
        return reconciler.restart()
    if command == 'ps':
        return reconciler.ps()
    if command == 'logs':
        return reconciler.logs(args.service, follow=args.follow, tail=args.tail)
    if command == 'superuser':
        password = _superuser_password(args)
        if not password:
            print(format_result_line(False, "superuser: a password is required (--password)", not args.no_color))
            return OperationResult(ok=False, message='', state=reconciler.state)
        if args.superuser_command == 'reset':
            return reconciler.reset_password(args.username, password)
        return reconciler.create_superuser(args.username, args.email, password)
    if command == 'urls':
        return reconciler.urls()
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    color = not args.no_color and sys.stdout.isatty()

    if args.command == 'version':
        print(f"netbox-manager {get_cli_version()}")
        return 0

    try:
        config = load_config(args.dir)
    except NetboxManagerError as e:
        configure_logging(args.log_level or 'INFO')
        print(format_result_line(False, f"config: {e}", color))
        return 1

    configure_logging(args.log_level or config.log_level)
    if args.command in MUTATING_COMMANDS:
        check_runtime_dependencies()

    result = dispatch(args, ModeReconciler(config))
    if result is None:
        return 1

    if args.command == 'status' and result.ok:
        print_status(result, color)
    elif result.message:
        if args.command in ('ps', 'logs', 'urls') and result.ok:
            print(result.message)
        else:
            print(format_result_line(result.ok, result.message, color))
    return 0 if result.ok else 1


if __name__ == '__main__':
    raise SystemExit(main())
