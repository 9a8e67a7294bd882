"""
Agent treasury: Safe multi-owner authorization and allowance enforcement for AI agents.

Owners sign commitments over Safe transactions, the account enforces its
threshold, and the agent pulls funds only within the allowance the owners set:
owners set bounds, the agent operates within them, every step is audited.
"""

__version__ = "0.1.0"

from .digest import compute_commitment, compute_domain_separator, compute_safe_tx_struct_hash
from .signature import pack_signatures, recover_signer, sign_commitment, verify_signature
from .transaction import (
    AllowanceUpdate,
    DelegateRegistration,
    ModuleActivation,
    Operation,
    RawCall,
    SafeTransaction,
    ThresholdChange,
    TokenTransfer,
)
from .aggregator import FileProposalStore, InMemoryProposalStore, PendingProposal, SignatureAggregator
from .policy import AllowanceState, Allow, Deny, DenyReason, decide_transfer
from .sequencer import ExecutionSequencer, PipelineReport
from .proposals import ProposalService
from .refill import RefillService
from .reconciler import TreasuryStatus, reconcile
from .deploy import SafeDeployment, deploy_safe, plan_deployment, verify_deployment
from .config import TreasuryConfig, load_config
from .keys import LocalKeySigner
from .audit import AuditTrail, EventType

__all__ = [
    "compute_commitment", "compute_domain_separator", "compute_safe_tx_struct_hash",
    "pack_signatures", "recover_signer", "sign_commitment", "verify_signature",
    "SafeTransaction", "Operation", "ModuleActivation", "DelegateRegistration",
    "AllowanceUpdate", "ThresholdChange", "TokenTransfer", "RawCall",
    "SignatureAggregator", "PendingProposal", "InMemoryProposalStore", "FileProposalStore",
    "AllowanceState", "Allow", "Deny", "DenyReason", "decide_transfer",
    "ExecutionSequencer", "PipelineReport", "ProposalService", "RefillService",
    "TreasuryStatus", "reconcile", "TreasuryConfig", "load_config",
    "SafeDeployment", "deploy_safe", "plan_deployment", "verify_deployment",
    "LocalKeySigner", "AuditTrail", "EventType",
]
