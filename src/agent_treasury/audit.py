"""
Audit trail for treasury operations.

Every proposal, signature, setup step and allowance pull is appended to a
JSONL file. Each record carries ``prev_hash`` and an HMAC-SHA256
``event_hash`` over (prev_hash, canonical payload), so editing, dropping or
reordering records breaks the chain on the next read. Appends from several
processes are serialized with an exclusive lock on the log file.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".agent-treasury" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".agent-treasury-secrets" / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    PROPOSAL_CREATED = "proposal_created"
    SIGNATURE_ADDED = "signature_added"
    PROPOSAL_EXECUTED = "proposal_executed"
    STEP_EXECUTED = "step_executed"
    STEP_SKIPPED = "step_skipped"
    STEP_REJECTED = "step_rejected"
    PULL_DENIED = "pull_denied"
    PULL_SUBMITTED = "pull_submitted"
    PULL_FAILED = "pull_failed"
    SAFE_DEPLOYED = "safe_deployed"


@dataclass
class AuditEvent:
    """One audit record. ``amount`` is in base units, kept as a decimal string."""

    event_type: str
    timestamp: float
    safe: Optional[str] = None
    commitment: Optional[str] = None
    signer: Optional[str] = None
    delegate: Optional[str] = None
    asset: Optional[str] = None
    amount: Optional[str] = None
    nonce: Optional[int] = None
    tx_hash: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        key: Optional[str] = None,
    ):
        """``key`` takes precedence over ``key_path``, which is generated on first use."""
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for target in (self.path, self.key_path):
            ensure_private_dir(target.parent)
            ensure_private_file(target)
        self._key = key.encode() if key else self._hmac_key()

    def _hmac_key(self) -> bytes:
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        generated = secrets.token_hex(32).encode()
        self.key_path.write_bytes(generated)
        ensure_private_file(self.key_path)
        return generated

    def _digest(self, payload: dict[str, Any], prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _records(self) -> Iterator[dict[str, Any]]:
        """Yield verified records in order; raise RuntimeError at the first broken link."""
        if not self.path.exists():
            return
        expected_prev = ""
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                record = json.loads(line)
                prev_hash = record.get("prev_hash") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {lineno}")
                payload = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
                if not hmac.compare_digest(self._digest(payload, prev_hash), record.get("event_hash") or ""):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {lineno}")
                expected_prev = record["event_hash"]
                yield record

    def _tail_hash(self) -> str:
        last = ""
        for record in self._records():
            last = record["event_hash"]
        return last

    def log(
        self,
        event_type: EventType,
        safe: Optional[str] = None,
        commitment: Optional[str] = None,
        signer: Optional[str] = None,
        delegate: Optional[str] = None,
        asset: Optional[str] = None,
        amount: Optional[int] = None,
        nonce: Optional[int] = None,
        tx_hash: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        fields_ = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "safe": safe,
            "commitment": commitment,
            "signer": signer,
            "delegate": delegate,
            "asset": asset,
            "amount": None if amount is None else str(amount),
            "nonce": nonce,
            "tx_hash": tx_hash,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in fields_.items() if v is not None}

        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._tail_hash()
                event = AuditEvent(
                    **payload,
                    prev_hash=prev_hash or None,
                    event_hash=self._digest(payload, prev_hash),
                )
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        return event

    def read_events(
        self,
        commitment: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain, then return the last ``limit`` matching events."""
        matches = [
            AuditEvent.from_record(record)
            for record in self._records()
            if (commitment is None or record.get("commitment") == commitment)
            and (event_type is None or record.get("event_type") == event_type.value)
        ]
        return matches[-limit:] if limit > 0 else []

    def verify(self) -> int:
        """Walk the chain and return the number of intact records."""
        return sum(1 for _ in self._records())

    def summary(self) -> dict:
        by_type: dict[str, int] = {}
        failures = 0
        last: Optional[dict[str, Any]] = None
        for record in self._records():
            by_type[record["event_type"]] = by_type.get(record["event_type"], 0) + 1
            failures += 0 if record.get("success", True) else 1
            last = record
        return {
            "total_events": sum(by_type.values()),
            "by_type": by_type,
            "failures": failures,
            "last_event": AuditEvent.from_record(last).to_json() if last else None,
        }
