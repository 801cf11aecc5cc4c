#!/usr/bin/env python3
"""
Bounded sleep-and-retry polling.

poll_until() returns a PollResult instead of raising, so callers can tell
"not ready yet" (timed_out) apart from real failures (which propagate).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    ok: bool
    value: Any = None
    attempts: int = 0
    message: str = ''

    @property
    def timed_out(self) -> bool:
        return not self.ok


def poll_until(
    check: Callable[[], Tuple[bool, Any]],
    attempts: int,
    delay: float,
    description: str = 'condition',
    sleep: Callable[[float], None] = time.sleep,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    Call check() up to `attempts` times, sleeping `delay` seconds between calls.

    check() returns (ready, value). Exceptions raised by check() propagate.
    With `timeout`, polling also stops once that many seconds have passed,
    even if attempts remain.

    Example:
        result = poll_until(lambda: (status() == 'running', None), attempts=30, delay=2)
        if result.timed_out:
            logger.warning("still starting")
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    deadline = clock() + timeout if timeout is not None else None
    last_value: Optional[Any] = None
    for attempt in range(1, attempts + 1):
        ready, last_value = check()
        if ready:
            logger.debug(f"{description}: ready after {attempt} attempt(s)")
            return PollResult(ok=True, value=last_value, attempts=attempt)

        if deadline is not None and clock() >= deadline:
            return PollResult(
                ok=False,
                value=last_value,
                attempts=attempt,
                message=f"{description} not ready after {timeout:g}s",
            )

        if attempt < attempts:
            logger.info(f"  [{attempt}/{attempts}] Waiting for {description}, retrying in {delay:g}s...")
            sleep(delay)

    return PollResult(
        ok=False,
        value=last_value,
        attempts=attempts,
        message=f"{description} not ready after {attempts} attempts",
    )
