"""
Cross-signer proposal flow for accounts with threshold above 1.

propose -> (co-signers) confirm -> execute. Proposals are kept in the local
aggregator store and mirrored to the relay when one is configured, so owners
using the Safe web app see the same queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from .aggregator import PendingProposal, ProposalState, SignatureAggregator
from .audit import AuditTrail, EventType
from .config import TreasuryConfig
from .digest import commitment_hex, compute_commitment, parse_commitment
from .errors import (
    EncodingError,
    NotAnOwnerError,
    StaleProposalError,
    StepRejected,
    ThresholdNotMetError,
    UnknownCommitment,
)
from .keys import KeySigner
from .ledger import Ledger
from .relay import SafeTransactionServiceClient
from .signature import pack_signatures, sign_commitment
from .transaction import (
    AdminOperation,
    Operation,
    RawCall,
    SafeTransaction,
    ThresholdChange,
    TokenTransfer,
    normalize_address,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    commitment: str
    nonce: int
    tx_hash: Optional[str]
    signers: list[str] = field(default_factory=list)
    pruned: int = 0

    def to_dict(self) -> dict:
        return {
            "commitment": self.commitment,
            "nonce": self.nonce,
            "tx_hash": self.tx_hash,
            "signers": list(self.signers),
            "pruned": self.pruned,
        }


@dataclass
class PendingView:
    proposal: PendingProposal
    state: ProposalState
    missing_signers: list[str]


class ProposalService:
    def __init__(
        self,
        ledger: Ledger,
        signer: Optional[KeySigner],
        aggregator: SignatureAggregator,
        config: TreasuryConfig,
        relay: Optional[SafeTransactionServiceClient] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.ledger = ledger
        self.signer = signer
        self.aggregator = aggregator
        self.config = config
        self.relay = relay
        self.audit = audit
        self._domain_separator: Optional[bytes] = None

    @property
    def domain_separator(self) -> bytes:
        if self._domain_separator is None:
            self._domain_separator = self.ledger.get_domain_separator()
        return self._domain_separator

    # -- proposing ---------------------------------------------------------

    def propose(self, operation: Union[AdminOperation, SafeTransaction]) -> ProposalState:
        """Build the transaction at the current nonce, sign it and open a proposal."""
        signer = self._require_owner()
        if isinstance(operation, SafeTransaction):
            tx = operation
            description = f"call({tx.to})"
        else:
            tx = operation.build(self.ledger.safe_address, self.ledger.get_nonce())
            description = operation.describe()

        commitment = compute_commitment(self.domain_separator, tx)
        key = commitment_hex(commitment)
        signature = sign_commitment(signer, commitment)
        threshold = self.ledger.get_threshold()
        owners = self.ledger.get_owners()

        logger.info("Proposing %s at nonce %d: %s", description, tx.nonce, key)
        self.aggregator.open_proposal(tx, commitment, signer.address, signature, threshold_hint=threshold)
        if self.relay is not None:
            self.relay.propose(self.ledger.safe_address, tx, commitment, signature, signer.address)
        self._log(EventType.PROPOSAL_CREATED, key, nonce=tx.nonce, details={"operation": description})
        return self.aggregator.state(commitment, threshold, owners)

    def transfer(self, symbol: str, recipient: str, amount: int) -> ProposalState:
        asset = self.config.asset(symbol)
        return self.propose(TokenTransfer(asset.token, recipient, amount))

    def change_threshold(self, threshold: int) -> ProposalState:
        owners = self.ledger.get_owners()
        if not 1 <= threshold <= len(owners):
            raise EncodingError(f"Threshold must be between 1 and {len(owners)}")
        return self.propose(ThresholdChange(threshold))

    def raw(
        self,
        to: str,
        value: int = 0,
        data: bytes = b"",
        operation: Operation = Operation.CALL,
    ) -> ProposalState:
        return self.propose(RawCall(to=to, value=value, data=data, operation=operation))

    # -- co-signing ----------------------------------------------------------

    def confirm(self, commitment: bytes | str) -> ProposalState:
        """Add this signer's signature to a known proposal."""
        signer = self._require_owner()
        raw = parse_commitment(commitment)
        key = commitment_hex(raw)
        signature = sign_commitment(signer, raw)

        try:
            self.aggregator.get(raw)
            self.aggregator.add_signature(raw, signer.address, signature)
        except UnknownCommitment:
            if self.relay is None:
                raise
            remote = self.relay.get(raw)
            if compute_commitment(self.domain_separator, remote.transaction) != raw:
                logger.warning("Relay transaction for %s does not hash to it", key)
                raise
            self.aggregator.ingest(remote.transaction, raw, remote.confirmations, remote.confirmations_required)
            self.aggregator.open_proposal(remote.transaction, raw, signer.address, signature)

        if self.relay is not None:
            self.relay.confirm(raw, signature)
        self._log(EventType.SIGNATURE_ADDED, key)
        return self.aggregator.state(raw, self.ledger.get_threshold(), self.ledger.get_owners())

    # -- execution -----------------------------------------------------------

    def execute(self, commitment: bytes | str) -> ExecutionResult:
        """Submit a proposal whose owner signatures meet the threshold read right now."""
        raw = parse_commitment(commitment)
        key = commitment_hex(raw)
        proposal = self.aggregator.get(raw)

        nonce = self.ledger.get_nonce()
        if proposal.nonce != nonce:
            if proposal.nonce < nonce:
                self.aggregator.discard(raw)
            raise StaleProposalError(key, proposal.nonce, nonce)

        threshold = self.ledger.get_threshold()
        owners = set(self.ledger.get_owners())
        pairs = [(owner, sig) for owner, sig in proposal.signature_pairs() if owner in owners]
        if not self.aggregator.is_executable(proposal, threshold, owners):
            raise ThresholdNotMetError(key, len(pairs), threshold)

        logger.info("Executing %s at nonce %d with %d signature(s)", key, nonce, len(pairs))
        receipt = self.ledger.exec_transaction(proposal.transaction, pack_signatures(pairs))
        if not receipt.success:
            self._log(EventType.PROPOSAL_EXECUTED, key, nonce=nonce, tx_hash=receipt.tx_hash,
                      success=False, reason=receipt.reason)
            raise StepRejected("execTransaction", receipt.tx_hash, receipt.reason or "reverted")

        self.aggregator.discard(raw)
        pruned = self.aggregator.prune(nonce + 1)
        self._log(EventType.PROPOSAL_EXECUTED, key, nonce=nonce, tx_hash=receipt.tx_hash)
        return ExecutionResult(
            commitment=key,
            nonce=nonce,
            tx_hash=receipt.tx_hash,
            signers=[owner for owner, _ in pairs],
            pruned=pruned,
        )

    # -- views ---------------------------------------------------------------

    def pending(self) -> list[PendingView]:
        threshold = self.ledger.get_threshold()
        owners = self.ledger.get_owners()
        views = []
        for proposal in self.aggregator.pending():
            views.append(
                PendingView(
                    proposal=proposal,
                    state=self.aggregator.state(proposal.commitment, threshold, owners),
                    missing_signers=self.aggregator.missing_signers(proposal, owners),
                )
            )
        return views

    def sync_from_relay(self) -> int:
        """Pull the relay's queue into the local store. Returns the number of proposals merged."""
        if self.relay is None:
            return 0
        merged = 0
        for remote in self.relay.pending(self.ledger.safe_address):
            raw = parse_commitment(remote.commitment)
            if compute_commitment(self.domain_separator, remote.transaction) != raw:
                logger.warning("Relay proposal %s does not match its transaction; ignored", remote.commitment)
                continue
            proposal = self.aggregator.ingest(
                remote.transaction, raw, remote.confirmations, remote.confirmations_required
            )
            if proposal is not None:
                merged += 1
        self.aggregator.prune(self.ledger.get_nonce())
        return merged

    def _require_owner(self) -> KeySigner:
        if self.signer is None:
            raise NotAnOwnerError("(no signing key)")
        if normalize_address(self.signer.address) not in self.ledger.get_owners():
            raise NotAnOwnerError(self.signer.address)
        return self.signer

    def _log(self, event_type: EventType, commitment: str, **fields) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            safe=self.ledger.safe_address,
            commitment=commitment,
            signer=self.signer.address if self.signer is not None else None,
            **fields,
        )

