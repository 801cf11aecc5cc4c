"""
Credential generation tests.
"""

import re
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from netbox_manager.secrets_gen import fill_missing_credentials, generate_secret  # noqa: E402


def test_secret_is_hex_of_requested_length():
    secret = generate_secret(32)

    assert re.fullmatch(r"[0-9a-f]{64}", secret)


def test_secrets_differ():
    assert generate_secret() != generate_secret()


def test_short_secret_rejected():
    with pytest.raises(ValueError):
        generate_secret(16)


def test_fill_missing_only_generates_absent_keys():
    calls = []

    def generator():
        calls.append(1)
        return f"gen{len(calls)}"

    credentials = {"A": "keep", "B": ""}
    generated = fill_missing_credentials(credentials, ["A", "B", "C"], generator)

    assert generated == ["B", "C"]
    assert credentials == {"A": "keep", "B": "gen1", "C": "gen2"}


def test_fill_missing_is_noop_when_complete():
    def generator():
        raise AssertionError("generator must not be called")

    credentials = {"A": "x"}

    assert fill_missing_credentials(credentials, ["A"], generator) == []
    assert credentials == {"A": "x"}
