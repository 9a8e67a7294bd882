"""
Key-custody adapters.

The engine never handles raw keys beyond this module: callers get a signer
whose only capability is ``sign_digest`` over a 32-byte commitment.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import parse_qs, unquote, urlparse

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import EncodingError, KeyAccessError

logger = logging.getLogger(__name__)


class KeySigner(Protocol):
    @property
    def address(self) -> str: ...

    def sign_digest(self, digest: bytes) -> bytes: ...


class LocalKeySigner:
    """Adapter that wraps an eth-account LocalAccount as a digest signer."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "LocalKeySigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def account(self) -> LocalAccount:
        return self._account

    def sign_digest(self, digest: bytes) -> bytes:
        """Sign the 32-byte digest under the eth_sign message prefix. Returns r||s||v (v in 27/28)."""
        if not isinstance(digest, (bytes, bytearray)) or len(digest) != 32:
            raise EncodingError("Signer only accepts 32-byte digests")
        signed = self._account.sign_message(encode_defunct(primitive=bytes(digest)))
        return bytes(signed.signature)

    def __repr__(self) -> str:
        return f"LocalKeySigner({self.address})"


def resolve_private_key(
    reference: str,
    keychain_db: Optional[str] = None,
    keychain_pass_file: Optional[Path] = None,
) -> str:
    """Resolve a key reference to a 0x-prefixed 32-byte hex key.

    Accepted forms: raw hex, ``op://vault/item/field`` (1Password CLI) and
    ``keychain://service/account`` (macOS ``security``; ``?db=`` selects a
    keychain file).
    """
    candidate = reference.strip()
    if candidate.startswith("op://"):
        candidate = _run_secret_command(["op", "read", candidate], "1Password reference")
    elif candidate.startswith("keychain://"):
        candidate = _read_keychain(candidate, keychain_db, keychain_pass_file)

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise KeyAccessError("Private key must be a 32-byte hex string or a valid op:// / keychain:// reference")
    try:
        int(candidate, 16)
    except ValueError as e:
        raise KeyAccessError("Private key is not valid hex") from e
    return "0x" + candidate


def signer_from_reference(reference: str, **kwargs) -> LocalKeySigner:
    return LocalKeySigner.from_private_key(resolve_private_key(reference, **kwargs))


def _read_keychain(reference: str, keychain_db: Optional[str], pass_file: Optional[Path]) -> str:
    parsed = urlparse(reference)
    service = unquote(parsed.netloc)
    account = unquote(parsed.path.lstrip("/"))
    if not service or not account:
        raise KeyAccessError(f"Keychain reference must be keychain://service/account: {reference}")
    db = parse_qs(parsed.query).get("db", [keychain_db])[0]

    if db and pass_file is not None and pass_file.exists():
        password = pass_file.read_text().strip()
        unlock = subprocess.run(
            ["security", "unlock-keychain", "-p", password, db],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if unlock.returncode != 0:
            # keychain may already be unlocked; the read below is authoritative
            logger.debug("Keychain unlock returned %d", unlock.returncode)

    cmd = ["security", "find-generic-password", "-a", account, "-s", service, "-w"]
    if db:
        cmd.append(db)
    return _run_secret_command(cmd, "keychain entry")


def _run_secret_command(cmd: list[str], what: str) -> str:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise KeyAccessError(f"Failed to read {what}: {e}") from e
    if result.returncode != 0:
        raise KeyAccessError(f"Failed to read {what}: {result.stderr.strip()}")
    return result.stdout.strip()
