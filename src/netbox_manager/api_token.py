#!/usr/bin/env python3
"""
Token Provisioner: fetch-or-create the NetBox API token used by Slurp'it.

The administrative scripts below are fixed data. They run through
`manage.py shell` with the script on stdin, and every parameter travels
in the environment (`docker exec -e NAME`), so a label or password is never
interpolated into code.

Scripts report results on a marked line (`NBM_TOKEN=<key>`) because the
Django shell may print other output first.
"""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable, Dict, List, Optional

from .config_constants import DEFAULT_TOKEN_LABEL, NETBOX_MANAGE_PY
from .docker import CommandResult, docker_exec
from .errors import CommandError
from .retry import poll_until

logger = logging.getLogger(__name__)

TOKEN_MARKER = 'NBM_TOKEN='
NO_SUPERUSER_MARKER = 'NBM_NO_SUPERUSER'
EXISTS_MARKER = 'NBM_EXISTS='
RESET_MARKER = 'NBM_RESET='

# Upper bound in seconds for one admin command; ensure_token also caps it
# by the time left in its overall budget
EXEC_TIMEOUT = 30

_LOOKUP = '''
import os
from django.contrib.auth import get_user_model
from users.models import Token

label = os.environ["NBM_TOKEN_LABEL"]
user = get_user_model().objects.filter(is_superuser=True).order_by("pk").first()
if user is None:
    print("NBM_NO_SUPERUSER")
token = Token.objects.filter(user=user, description=label).order_by("pk").first() if user else None
'''

ADMIN_COMMANDS: Dict[str, str] = {
    'find_token': _LOOKUP + '''
print("NBM_TOKEN=" + (token.key if token else ""))
''',
    'create_token': _LOOKUP + '''
if token is None and user is not None:
    token = Token.objects.create(user=user, description=label, write_enabled=True)
print("NBM_TOKEN=" + (token.key if token else ""))
''',
    'user_exists': '''
import os
from django.contrib.auth import get_user_model

exists = get_user_model().objects.filter(username=os.environ["NBM_USERNAME"]).exists()
print("NBM_EXISTS=" + ("1" if exists else "0"))
''',
    'set_password': '''
import os
from django.contrib.auth import get_user_model

user = get_user_model().objects.filter(username=os.environ["NBM_USERNAME"]).first()
if user is not None:
    user.set_password(os.environ["NBM_PASSWORD"])
    user.save()
print("NBM_RESET=" + ("1" if user is not None else "0"))
''',
    'plugin_status': '''
import importlib
import os
from django.conf import settings

for name in settings.PLUGINS:
    try:
        importlib.import_module(name)
        print("NBM_PLUGIN=" + name + " OK")
    except Exception as e:
        print("NBM_PLUGIN=" + name + " FAIL " + type(e).__name__)
print("NBM_REGISTERED=" + ("1" if os.environ["NBM_REQUIRED_PLUGIN"] in settings.PLUGINS else "0"))
''',
}

ExecFn = Callable[..., CommandResult]


def parse_markers(output: str, marker: str) -> List[str]:
    """Return the values of every `<marker><value>` line, control characters stripped."""
    values = []
    for line in (output or '').splitlines():
        line = line.strip()
        if line.startswith(marker):
            values.append(''.join(ch for ch in line[len(marker):] if ch.isprintable()).strip())
    return values


def parse_marker(output: str, marker: str) -> Optional[str]:
    """
    Return the value of the last `<marker><value>` line, or None if absent.

    Examples:
        >>> parse_marker('noise\\nNBM_TOKEN=abc\\r\\n', 'NBM_TOKEN=')
        'abc'
        >>> parse_marker('nothing here', 'NBM_TOKEN=') is None
        True
    """
    values = parse_markers(output, marker)
    return values[-1] if values else None


def parse_token_output(output: str) -> str:
    """Return the token from script output ('' when none was reported)."""
    return parse_marker(output, TOKEN_MARKER) or ''


def run_admin_command(
    container: str,
    name: str,
    env: Dict[str, str],
    exec_fn: ExecFn = docker_exec,
    timeout: float = EXEC_TIMEOUT,
) -> Optional[CommandResult]:
    """
    Run one of ADMIN_COMMANDS in the container.

    Returns None when the container did not answer in time.
    """
    script = ADMIN_COMMANDS[name]
    try:
        return exec_fn(
            container,
            ['python3', NETBOX_MANAGE_PY, 'shell'],
            env=env,
            stdin=script,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"{name}: no answer from {container} within {timeout:g}s")
        return None


def ensure_token(
    primary_container: str,
    label: str = DEFAULT_TOKEN_LABEL,
    attempts: int = 20,
    delay: float = 3.0,
    exec_fn: ExecFn = docker_exec,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """
    Return the API token for `label`, creating it once NetBox answers.

    Each attempt first looks the token up; creation runs only when the
    lookup succeeded and reported no token, so at most one token per label
    is ever created.

    The whole wait is bounded by attempts * delay seconds (at least
    EXEC_TIMEOUT): each admin command gets at most the time that is left.

    Returns:
        The token, or "" when NetBox did not become ready within the budget
    """
    env = {'NBM_TOKEN_LABEL': label}
    budget = max(attempts * delay, EXEC_TIMEOUT)
    deadline = clock() + budget

    def exec_timeout() -> float:
        return min(EXEC_TIMEOUT, max(deadline - clock(), 1.0))

    def check():
        found = run_admin_command(primary_container, 'find_token', env, exec_fn, exec_timeout())
        if found is None or not found.ok:
            return False, None
        if NO_SUPERUSER_MARKER in found.stdout:
            logger.debug("No superuser in NetBox yet")
            return False, None

        token = parse_token_output(found.stdout)
        if token:
            logger.info(f"Reusing existing API token '{label}'")
            return True, token

        created = run_admin_command(primary_container, 'create_token', env, exec_fn, exec_timeout())
        if created is None or not created.ok:
            return False, None
        token = parse_token_output(created.stdout)
        if token:
            logger.info(f"Created API token '{label}'")
        return bool(token), token

    result = poll_until(
        check,
        attempts=attempts,
        delay=delay,
        description='NetBox API token',
        sleep=sleep,
        timeout=budget,
        clock=clock,
    )
    if result.timed_out:
        logger.warning(f"Could not obtain API token: {result.message}")
        return ''
    return result.value


def ensure_superuser(
    primary_container: str,
    username: str,
    email: str,
    password: str,
    exec_fn: ExecFn = docker_exec,
) -> bool:
    """
    Create a NetBox superuser non-interactively.

    Returns:
        True if the user was created, False if the username already existed

    Raises:
        CommandError: If NetBox could not be queried or creation failed
    """
    cmd = ['python3', NETBOX_MANAGE_PY, 'shell']
    check = exec_fn(primary_container, cmd, env={'NBM_USERNAME': username}, stdin=ADMIN_COMMANDS['user_exists'])
    exists = parse_marker(check.stdout, EXISTS_MARKER) if check.ok else None
    if exists is None:
        raise CommandError(check.cmd, check.returncode, check.stderr or 'user lookup returned no result')
    if exists == '1':
        logger.info(f"Superuser '{username}' already exists")
        return False

    env = {
        'DJANGO_SUPERUSER_USERNAME': username,
        'DJANGO_SUPERUSER_EMAIL': email,
        'DJANGO_SUPERUSER_PASSWORD': password,
    }
    result = exec_fn(primary_container, ['python3', NETBOX_MANAGE_PY, 'createsuperuser', '--noinput'], env=env)
    if not result.ok:
        raise CommandError(result.cmd, result.returncode, result.stderr)
    logger.info(f"Created superuser '{username}'")
    return True


def reset_superuser_password(
    primary_container: str,
    username: str,
    password: str,
    exec_fn: ExecFn = docker_exec,
) -> bool:
    """
    Set a new password for an existing NetBox user.

    Returns:
        True if the password was changed, False if no user has that name

    Raises:
        CommandError: If NetBox could not be queried
    """
    env = {'NBM_USERNAME': username, 'NBM_PASSWORD': password}
    result = run_admin_command(primary_container, 'set_password', env, exec_fn)
    if result is None:
        raise CommandError(['docker', 'exec', primary_container], -1, f"no answer within {EXEC_TIMEOUT}s")
    reset = parse_marker(result.stdout, RESET_MARKER) if result.ok else None
    if reset is None:
        raise CommandError(result.cmd, result.returncode, result.stderr or 'password reset returned no result')
    if reset != '1':
        logger.warning(f"No NetBox user named '{username}'")
        return False
    logger.info(f"Password reset for '{username}'")
    return True
