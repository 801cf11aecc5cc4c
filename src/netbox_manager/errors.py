"""Exception types raised by netbox-manager."""

from __future__ import annotations

from typing import Optional, Sequence


class NetboxManagerError(RuntimeError):
    """Base class for all expected netbox-manager failures."""


class SettingsError(NetboxManagerError, ValueError):
    """Raised when the settings file is malformed or holds an invalid value."""


class FetchError(NetboxManagerError):
    """Raised when a remote document cannot be fetched."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class CommandError(NetboxManagerError):
    """Raised when an external command exits non-zero."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = "") -> None:
        detail = (stderr or "").strip().splitlines()
        tail = f": {detail[-1]}" if detail else ""
        super().__init__(f"Command failed with exit code {returncode}: {' '.join(cmd)}{tail}")
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr


class ComposeError(NetboxManagerError):
    """Raised when the compose document set is inconsistent."""


class ComposeResolveError(ComposeError):
    """Raised when `docker compose config` rejects the layered documents."""

    def __init__(self, document: Optional[str], reason: str) -> None:
        where = f" (offending document: {document})" if document else ""
        super().__init__(f"Compose resolution failed{where}: {reason}")
        self.document = document
        self.reason = reason


class ReconcileError(NetboxManagerError):
    """Raised when a reconciliation step fails; carries the step name."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause
