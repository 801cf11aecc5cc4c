"""
Bounded polling tests.
"""

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from netbox_manager.retry import poll_until  # noqa: E402


def test_ready_on_third_attempt():
    answers = iter([(False, None), (False, None), (True, "value")])
    sleeps = []

    result = poll_until(lambda: next(answers), attempts=5, delay=2, sleep=sleeps.append)

    assert result.ok
    assert result.value == "value"
    assert result.attempts == 3
    assert sleeps == [2, 2]


def test_timeout_is_a_result_not_an_exception():
    result = poll_until(lambda: (False, "last"), attempts=2, delay=0, description="thing", sleep=lambda s: None)

    assert result.timed_out
    assert result.value == "last"
    assert "thing not ready after 2 attempts" == result.message


def test_check_errors_propagate():
    def check():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        poll_until(check, attempts=3, delay=0, sleep=lambda s: None)


def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        poll_until(lambda: (True, None), attempts=0, delay=0)


def test_timeout_stops_before_attempts_run_out():
    now = [0.0]

    def check():
        now[0] += 10
        return False, None

    def sleep(seconds):
        now[0] += seconds

    result = poll_until(check, attempts=20, delay=5, description="thing", sleep=sleep, timeout=30, clock=lambda: now[0])

    assert result.timed_out
    assert result.attempts == 3
    assert result.message == "thing not ready after 30s"
    assert now[0] == 40
