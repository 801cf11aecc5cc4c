#!/usr/bin/env python3
"""Shared CLI helpers."""

from __future__ import annotations

# Color codes for output
BLUE = '\033[94m'
GREEN = '\033[92m'
YELLOW = '\033[93m'
RED = '\033[91m'
RESET = '\033[0m'


def get_cli_version() -> str:
    try:
        from importlib.metadata import version as package_version

        return package_version("netbox-manager")
    except Exception:
        try:
            from . import __version__  # type: ignore

            return __version__
        except Exception:
            return "unknown"


def colorize(text: str, color: str, enabled: bool = True) -> str:
    """Wrap text in an ANSI color code when enabled."""
    if not enabled:
        return text
    return f"{color}{text}{RESET}"


def format_result_line(ok: bool, message: str, color: bool = True) -> str:
    """Render a one-line operation outcome for the terminal."""
    if ok:
        return f"{colorize('[OK]', GREEN, color)} {message}"
    return f"{colorize('[ERROR]', RED, color)} {message}"


def format_status_flag(ok: bool | None, color: bool = True) -> str:
    """Render a status word (OK / FAIL / PENDING) for reports."""
    if ok is None:
        return colorize("PENDING", YELLOW, color)
    if ok:
        return colorize("OK", GREEN, color)
    return colorize("FAIL", RED, color)
