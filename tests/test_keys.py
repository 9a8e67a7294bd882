"""Tests for key-custody references."""

import subprocess

import pytest
from eth_account import Account

from agent_treasury.errors import KeyAccessError
from agent_treasury.keys import resolve_private_key, signer_from_reference


class _Completed:
    def __init__(self, stdout="", returncode=0, stderr=""):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr


def test_hex_key_with_and_without_prefix():
    acct = Account.create()
    raw = bytes(acct.key).hex()
    assert resolve_private_key(raw) == "0x" + raw
    assert resolve_private_key("0x" + raw) == "0x" + raw
    assert signer_from_reference(raw).address == acct.address


@pytest.mark.parametrize("bad", ["0x1234", "zz" * 32, ""])
def test_invalid_key_material(bad):
    with pytest.raises(KeyAccessError):
        resolve_private_key(bad)


def test_one_password_reference(monkeypatch):
    raw = bytes(Account.create().key).hex()
    calls = []

    def _run(cmd, **kwargs):
        calls.append(cmd)
        return _Completed(stdout=raw + "\n")

    monkeypatch.setattr(subprocess, "run", _run)
    assert resolve_private_key("op://vault/agent/key") == "0x" + raw
    assert calls == [["op", "read", "op://vault/agent/key"]]


def test_one_password_failure(monkeypatch):
    monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: _Completed(returncode=1, stderr="locked"))
    with pytest.raises(KeyAccessError, match="locked"):
        resolve_private_key("op://vault/agent/key")


def test_keychain_reference_with_database(monkeypatch, tmp_path):
    raw = bytes(Account.create().key).hex()
    pass_file = tmp_path / "pass"
    pass_file.write_text("hunter2\n")
    calls = []

    def _run(cmd, **kwargs):
        calls.append(cmd)
        return _Completed(stdout=raw)

    monkeypatch.setattr(subprocess, "run", _run)
    key = resolve_private_key(
        "keychain://treasury/agent?db=/tmp/agent.keychain-db",
        keychain_pass_file=pass_file,
    )
    assert key == "0x" + raw
    assert calls[0] == ["security", "unlock-keychain", "-p", "hunter2", "/tmp/agent.keychain-db"]
    assert calls[1] == [
        "security", "find-generic-password", "-a", "agent", "-s", "treasury", "-w", "/tmp/agent.keychain-db",
    ]


def test_keychain_reference_needs_service_and_account():
    with pytest.raises(KeyAccessError):
        resolve_private_key("keychain://treasury")
