#!/usr/bin/env python3
"""HTTP helpers: reachability checks and document fetches."""

from __future__ import annotations

import logging
from typing import Tuple

import requests

from .errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


def status_url(base_url: str) -> str:
    """Return the NetBox API status endpoint for a base URL."""
    return f"{base_url.rstrip('/')}/api/status/"


def check_url_reachable(url: str, timeout: float = 2) -> Tuple[bool, str]:
    """
    GET a URL and report (ok, detail). Never raises.

    Any HTTP response below 500 counts as reachable: the service answered.
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        return False, f"unreachable ({e.__class__.__name__})"

    if response.status_code >= 500:
        return False, f"HTTP {response.status_code}"
    return True, f"HTTP {response.status_code}"


def fetch_text(url: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """
    Download a text document.

    Raises:
        FetchError: On connection errors, timeouts, non-2xx status or empty body
    """
    logger.info(f"Fetching {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise FetchError(url, str(e)) from e

    if not response.text.strip():
        raise FetchError(url, "empty response body")
    return response.text
