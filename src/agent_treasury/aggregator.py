"""
Signature aggregation for pending Safe transactions.

Signatures are keyed by commitment. Each (commitment, signer) pair holds at
most one signature: re-adding replaces it, so concurrent co-signers can only
ever race to the same deterministic value. Executability is always judged
against a threshold the caller has just read from the ledger.
"""

from __future__ import annotations

import fcntl
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from .digest import commitment_hex, compute_commitment, parse_commitment
from .errors import EncodingError, UnknownCommitment
from .signature import pack_signatures, recover_signer, split_signature
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file, safe_child_path
from .transaction import SafeTransaction, normalize_address

logger = logging.getLogger(__name__)


DEFAULT_PROPOSAL_DIR = Path.home() / ".agent-treasury" / "proposals"


@dataclass
class PendingProposal:
    """A transaction and the owner signatures collected for it so far."""

    commitment: str
    transaction: SafeTransaction
    signatures: dict[str, str] = field(default_factory=dict)  # signer -> 0x signature, submission order
    threshold_hint: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def nonce(self) -> int:
        return self.transaction.nonce

    @property
    def signers(self) -> list[str]:
        return list(self.signatures)

    def signature_pairs(self) -> list[tuple[str, bytes]]:
        return [(owner, bytes.fromhex(sig[2:])) for owner, sig in self.signatures.items()]

    def to_dict(self) -> dict:
        return {
            "commitment": self.commitment,
            "transaction": self.transaction.to_dict(),
            "signatures": [{"owner": k, "signature": v} for k, v in self.signatures.items()],
            "threshold_hint": self.threshold_hint,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PendingProposal:
        return cls(
            commitment=commitment_hex(parse_commitment(d["commitment"])),
            transaction=SafeTransaction.from_dict(d["transaction"]),
            signatures={
                normalize_address(item["owner"]): str(item["signature"]).lower()
                for item in d.get("signatures", [])
            },
            threshold_hint=int(d.get("threshold_hint", 0)),
            created_at=float(d.get("created_at", 0.0)),
            updated_at=float(d.get("updated_at", 0.0)),
        )


@dataclass
class ProposalState:
    """Snapshot of one proposal against a given threshold."""

    commitment: str
    nonce: int
    signers: list[str]
    threshold: int
    executable: bool

    @property
    def missing(self) -> int:
        return max(0, self.threshold - len(self.signers))

    def to_dict(self) -> dict:
        return {
            "commitment": self.commitment,
            "nonce": self.nonce,
            "signers": list(self.signers),
            "confirmations": len(self.signers),
            "threshold": self.threshold,
            "missing": self.missing,
            "executable": self.executable,
        }


Updater = Callable[[Optional[PendingProposal]], Optional[PendingProposal]]


class ProposalStore(Protocol):
    def get(self, commitment: str) -> Optional[PendingProposal]: ...

    def put(self, proposal: PendingProposal) -> None: ...

    def list(self) -> list[PendingProposal]: ...

    def delete(self, commitment: str) -> bool: ...

    def update(self, commitment: str, fn: Updater) -> Optional[PendingProposal]: ...


class InMemoryProposalStore:
    """Process-local proposal store."""

    def __init__(self):
        self._items: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, commitment: str) -> Optional[PendingProposal]:
        with self._lock:
            raw = self._items.get(commitment)
            return PendingProposal.from_dict(raw) if raw is not None else None

    def put(self, proposal: PendingProposal) -> None:
        with self._lock:
            self._items[proposal.commitment] = proposal.to_dict()

    def list(self) -> list[PendingProposal]:
        with self._lock:
            return [PendingProposal.from_dict(raw) for raw in self._items.values()]

    def delete(self, commitment: str) -> bool:
        with self._lock:
            return self._items.pop(commitment, None) is not None

    def update(self, commitment: str, fn: Updater) -> Optional[PendingProposal]:
        with self._lock:
            raw = self._items.get(commitment)
            current = PendingProposal.from_dict(raw) if raw is not None else None
            result = fn(current)
            if result is not None:
                self._items[commitment] = result.to_dict()
            return result


class FileProposalStore:
    """File-backed proposal store, one JSON file per commitment, lock-serialized across processes."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or DEFAULT_PROPOSAL_DIR
        ensure_private_dir(self.base_dir)
        self._lock_path = self.base_dir / ".lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _path(self, commitment: str) -> Path:
        identifier = commitment.lower().replace("0x", "")
        return safe_child_path(self.base_dir, identifier, ".json")

    def _read(self, path: Path) -> PendingProposal:
        with open(path, encoding="utf-8") as f:
            return PendingProposal.from_dict(json.load(f))

    def get(self, commitment: str) -> Optional[PendingProposal]:
        with self._lock():
            path = self._path(commitment)
            if not path.exists():
                return None
            return self._read(path)

    def put(self, proposal: PendingProposal) -> None:
        with self._lock():
            atomic_write_json(self._path(proposal.commitment), proposal.to_dict())

    def list(self) -> list[PendingProposal]:
        with self._lock():
            items = [self._read(path) for path in sorted(self.base_dir.glob("*.json"))]
        items.sort(key=lambda p: (p.nonce, p.created_at))
        return items

    def delete(self, commitment: str) -> bool:
        with self._lock():
            path = self._path(commitment)
            if not path.exists():
                return False
            path.unlink()
            return True

    def update(self, commitment: str, fn: Updater) -> Optional[PendingProposal]:
        with self._lock():
            path = self._path(commitment)
            current = self._read(path) if path.exists() else None
            result = fn(current)
            if result is not None:
                atomic_write_json(path, result.to_dict())
            return result


class SignatureAggregator:
    """Collects owner signatures per commitment until the ledger threshold is met."""

    def __init__(self, store: Optional[ProposalStore] = None, domain_separator: Optional[bytes] = None):
        self.store = store if store is not None else InMemoryProposalStore()
        self.domain_separator = domain_separator

    def open_proposal(
        self,
        transaction: SafeTransaction,
        commitment: bytes,
        signer: str,
        signature: bytes,
        threshold_hint: int = 0,
    ) -> PendingProposal:
        """Record a proposal with its first signature (idempotent per commitment)."""
        key = commitment_hex(commitment)
        if self.domain_separator is not None:
            expected = compute_commitment(self.domain_separator, transaction)
            if expected != bytes(commitment):
                raise EncodingError(f"Transaction does not hash to commitment {key}")
        owner = self._verified_owner(commitment, signer, signature)
        now = time.time()

        def _open(current: Optional[PendingProposal]) -> PendingProposal:
            proposal = current or PendingProposal(
                commitment=key,
                transaction=transaction,
                threshold_hint=threshold_hint,
                created_at=now,
            )
            proposal.signatures[owner] = "0x" + bytes(signature).hex()
            proposal.updated_at = now
            return proposal

        proposal = self.store.update(key, _open)
        assert proposal is not None
        logger.info("Proposal %s at nonce %d signed by %s", key, proposal.nonce, owner)
        return proposal

    def add_signature(self, commitment: bytes | str, signer: str, signature: bytes) -> PendingProposal:
        """Add (or replace) one owner's signature on a known proposal."""
        raw = parse_commitment(commitment)
        key = commitment_hex(raw)
        owner = self._verified_owner(raw, signer, signature)

        def _add(current: Optional[PendingProposal]) -> PendingProposal:
            if current is None:
                raise UnknownCommitment(key)
            current.signatures[owner] = "0x" + bytes(signature).hex()
            current.updated_at = time.time()
            return current

        proposal = self.store.update(key, _add)
        assert proposal is not None
        logger.info("Signature from %s added to %s (%d total)", owner, key, len(proposal.signatures))
        return proposal

    def get(self, commitment: bytes | str) -> PendingProposal:
        key = commitment_hex(parse_commitment(commitment))
        proposal = self.store.get(key)
        if proposal is None:
            raise UnknownCommitment(key)
        return proposal

    def counted_signers(self, proposal: PendingProposal, owners: Optional[Iterable[str]] = None) -> list[str]:
        """Signers that count toward the threshold: all of them, or only current ``owners``."""
        if owners is None:
            return proposal.signers
        allowed = {normalize_address(o) for o in owners}
        return [s for s in proposal.signers if s in allowed]

    def is_executable(
        self,
        proposal: PendingProposal,
        current_threshold: int,
        owners: Optional[Iterable[str]] = None,
    ) -> bool:
        counted = self.counted_signers(proposal, owners)
        return current_threshold >= 1 and len(counted) >= current_threshold

    def state(
        self,
        commitment: bytes | str,
        current_threshold: int,
        owners: Optional[Iterable[str]] = None,
    ) -> ProposalState:
        """Judge a proposal against the threshold (and owner set) read by the caller just now."""
        proposal = self.get(commitment)
        owner_list = None if owners is None else list(owners)
        signers = self.counted_signers(proposal, owner_list)
        return ProposalState(
            commitment=proposal.commitment,
            nonce=proposal.nonce,
            signers=signers,
            threshold=current_threshold,
            executable=self.is_executable(proposal, current_threshold, owner_list),
        )

    def missing_signers(self, proposal: PendingProposal, owners: Iterable[str]) -> list[str]:
        signed = set(proposal.signatures)
        return [owner for owner in (normalize_address(o) for o in owners) if owner not in signed]

    def packed_signatures(self, commitment: bytes | str) -> bytes:
        return pack_signatures(self.get(commitment).signature_pairs())

    def pending(self, nonce: Optional[int] = None) -> list[PendingProposal]:
        items = self.store.list()
        if nonce is not None:
            items = [p for p in items if p.nonce == nonce]
        return sorted(items, key=lambda p: (p.nonce, p.created_at))

    def ingest(
        self,
        transaction: SafeTransaction,
        commitment: bytes | str,
        signatures: Iterable[tuple[str, bytes]],
        threshold_hint: int = 0,
    ) -> Optional[PendingProposal]:
        """Merge a proposal fetched from an untrusted relay, keeping only signatures that verify."""
        raw = parse_commitment(commitment)
        key = commitment_hex(raw)
        if self.domain_separator is not None and compute_commitment(self.domain_separator, transaction) != raw:
            logger.warning("Relay proposal %s does not match its transaction; ignored", key)
            return None

        verified: list[tuple[str, bytes]] = []
        for signer, sig in signatures:
            try:
                verified.append((self._verified_owner(raw, signer, sig), bytes(sig)))
            except EncodingError as e:
                logger.warning("Dropping relay signature from %s on %s: %s", signer, key, e)
        if not verified:
            return None

        now = time.time()

        def _merge(current: Optional[PendingProposal]) -> PendingProposal:
            proposal = current or PendingProposal(
                commitment=key,
                transaction=transaction,
                threshold_hint=threshold_hint,
                created_at=now,
            )
            for owner, sig in verified:
                proposal.signatures[owner] = "0x" + sig.hex()
            proposal.threshold_hint = max(proposal.threshold_hint, threshold_hint)
            proposal.updated_at = now
            return proposal

        proposal = self.store.update(key, _merge)
        assert proposal is not None
        return proposal

    def discard(self, commitment: bytes | str) -> bool:
        return self.store.delete(commitment_hex(parse_commitment(commitment)))

    def prune(self, current_nonce: int) -> int:
        """Drop proposals superseded by an executed transaction (nonce below the account nonce)."""
        removed = 0
        for proposal in self.store.list():
            if proposal.nonce < current_nonce and self.store.delete(proposal.commitment):
                removed += 1
                logger.info("Pruned superseded proposal %s (nonce %d)", proposal.commitment, proposal.nonce)
        return removed

    def _verified_owner(self, commitment: bytes, signer: str, signature: bytes) -> str:
        split_signature(signature)
        owner = normalize_address(signer)
        recovered = recover_signer(commitment, signature)
        if recovered != owner:
            raise EncodingError(f"Signature recovers to {recovered}, not {owner}")
        return owner
