#!/usr/bin/env python3
"""
Credential generation for dependent-service databases.

Values are hex encoded so they never need escaping in YAML, in Compose
interpolation, or in a shell.
"""

from __future__ import annotations

import logging
import secrets
from typing import Callable, Dict, Iterable

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 24


def generate_secret(nbytes: int = 32) -> str:
    """
    Generate a random credential.

    Args:
        nbytes: Number of random bytes before hex encoding (at least 24)

    Returns:
        Hex string of 2 * nbytes characters

    Raises:
        ValueError: If nbytes is below the minimum
    """
    if nbytes < MIN_SECRET_BYTES:
        raise ValueError(f"Secret length must be at least {MIN_SECRET_BYTES} bytes")
    return secrets.token_hex(nbytes)


def fill_missing_credentials(
    credentials: Dict[str, str],
    keys: Iterable[str],
    generator: Callable[[], str] = generate_secret,
) -> list[str]:
    """
    Generate a value for every key that has no non-empty credential yet.

    Existing values are never touched. Returns the keys that were generated.
    """
    generated = []
    for key in keys:
        if credentials.get(key):
            continue
        credentials[key] = generator()
        generated.append(key)
        logger.info(f"Generated credential: {key}")
    return generated
