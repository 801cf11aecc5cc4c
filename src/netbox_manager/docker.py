#!/usr/bin/env python3
"""
Thin blocking wrappers around the Docker CLI.

Everything goes through run_cmd(), which uses subprocess.run with an
argument list (never a shell), so values from the settings file cannot be
interpreted as shell syntax.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import CommandError

logger = logging.getLogger(__name__)

NETWORKS_FORMAT = '{{range $k, $_ := .NetworkSettings.Networks}}{{println $k}}{{end}}'


@dataclass
class CommandResult:
    """Outcome of one external command."""
    cmd: List[str]
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_cmd(
    cmd: Sequence[str],
    cwd=None,
    check: bool = True,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str] = None,
    capture: bool = True,
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command and return its result.

    Args:
        cmd: Argument list
        cwd: Working directory
        check: Raise CommandError on non-zero exit
        env: Extra environment variables (merged over os.environ)
        input: Text passed on stdin
        capture: Capture stdout/stderr (False streams to the terminal)
        timeout: Seconds before subprocess.TimeoutExpired

    Raises:
        CommandError: If check is set and the command fails, or the binary is missing
    """
    cmd = [str(part) for part in cmd]
    logger.debug(f"Running: {' '.join(cmd)}")

    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            env=full_env,
            input=input,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise CommandError(cmd, 127, f"Command not found: {cmd[0]}") from None

    result = CommandResult(
        cmd=cmd,
        returncode=proc.returncode,
        stdout=proc.stdout or '',
        stderr=proc.stderr or '',
    )

    if check and not result.ok:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result


def list_containers(all_states: bool = False) -> List[Tuple[str, str]]:
    """Return (name, image) pairs for containers known to the engine."""
    cmd = ['docker', 'ps', '--format', '{{.Names}} {{.Image}}']
    if all_states:
        cmd.insert(2, '-a')
    result = run_cmd(cmd)

    containers = []
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            containers.append((parts[0], parts[1]))
    return containers


def container_status(container: str) -> Optional[str]:
    """Return the container state (running, exited, ...) or None if unknown."""
    result = run_cmd(
        ['docker', 'inspect', '--format', '{{.State.Status}}', container],
        check=False,
    )
    if not result.ok:
        return None
    return result.stdout.strip() or None


def container_networks(container: str) -> List[str]:
    """
    Return the networks a container is joined to, in engine order.

    Raises:
        CommandError: If the container does not exist
    """
    result = run_cmd(['docker', 'inspect', container, '--format', NETWORKS_FORMAT])
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def network_id(network: str) -> Optional[str]:
    """Return the network ID, or None when no network has that name."""
    result = run_cmd(
        ['docker', 'network', 'inspect', network, '--format', '{{.Id}}'],
        check=False,
    )
    if not result.ok:
        return None
    return result.stdout.strip() or network


def create_network(network: str) -> str:
    """Create a bridge network and return its ID."""
    result = run_cmd(['docker', 'network', 'create', network])
    return result.stdout.strip() or network


def connect_network(network: str, container: str) -> None:
    """Join a container to a network."""
    run_cmd(['docker', 'network', 'connect', network, container])


def published_port(container: str, internal_port: int) -> Optional[int]:
    """Return the host port published for container:internal_port/tcp, if any."""
    fmt = (
        '{{range $p, $conf := .NetworkSettings.Ports}}'
        f'{{{{if eq $p "{int(internal_port)}/tcp"}}}}'
        '{{range $conf}}{{println .HostPort}}{{end}}{{end}}{{end}}'
    )
    result = run_cmd(['docker', 'inspect', container, '--format', fmt], check=False)
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        if line.strip().isdigit():
            return int(line.strip())
    return None


def docker_exec(
    container: str,
    argv: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command inside a container and return the result without raising.

    Environment values are passed by name (`-e NAME`) so they do not appear
    on the docker command line.
    """
    cmd = ['docker', 'exec']
    if stdin is not None:
        cmd.append('-i')
    for name in sorted(env or {}):
        cmd.extend(['-e', name])
    cmd.append(container)
    cmd.extend(argv)
    return run_cmd(cmd, check=False, env=env, input=stdin, timeout=timeout)
