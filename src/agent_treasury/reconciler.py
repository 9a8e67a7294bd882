"""
Read-only treasury status.

Merges on-chain ownership and allowance state with the locally known pending
proposals into one view. Nothing here signs or submits anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .aggregator import PendingProposal
from .config import TreasuryConfig
from .errors import LedgerError
from .ledger import Ledger
from .policy import AllowanceState
from .units import format_units

logger = logging.getLogger(__name__)


@dataclass
class AllowanceView:
    delegate: str
    symbol: str
    token: str
    state: AllowanceState
    remaining: int
    reset_due: bool
    next_reset_min: Optional[int]

    def to_dict(self) -> dict:
        return {
            "delegate": self.delegate,
            "token": self.symbol,
            "tokenAddress": self.token,
            "limit": format_units(self.state.amount),
            "spent": format_units(self.state.spent),
            "remaining": format_units(self.remaining),
            "resetIntervalMin": self.state.reset_time_min,
            "lastResetMin": self.state.last_reset_min,
            "nextResetMin": self.next_reset_min,
            "resetDue": self.reset_due,
            "nonce": self.state.nonce,
        }


@dataclass
class ProposalView:
    commitment: str
    nonce: int
    to: str
    value: int
    confirmations: int
    required: int
    executable: bool
    signers: list[str]
    missing_owners: list[str]

    def to_dict(self) -> dict:
        return {
            "safeTxHash": self.commitment,
            "nonce": self.nonce,
            "to": self.to,
            "value": format_units(self.value),
            "confirmations": self.confirmations,
            "confirmationsRequired": self.required,
            "executable": self.executable,
            "signers": list(self.signers),
            "missingOwners": list(self.missing_owners),
        }


@dataclass
class TreasuryStatus:
    safe: str
    chain_id: int
    owners: list[str]
    threshold: int
    nonce: int
    module: str
    module_enabled: bool
    safe_balances: dict[str, int] = field(default_factory=dict)
    delegate_balances: dict[str, dict[str, int]] = field(default_factory=dict)
    allowances: list[AllowanceView] = field(default_factory=list)
    proposals: list[ProposalView] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "safe": {
                "address": self.safe,
                "chainId": self.chain_id,
                "threshold": self.threshold,
                "ownerCount": len(self.owners),
                "owners": list(self.owners),
                "allowanceModule": self.module,
                "allowanceModuleEnabled": self.module_enabled,
                "nonce": self.nonce,
            },
            "balances": {
                "safe": {k.lower(): format_units(v) for k, v in self.safe_balances.items()},
                "delegates": {
                    d: {k.lower(): format_units(v) for k, v in balances.items()}
                    for d, balances in self.delegate_balances.items()
                },
            },
            "allowances": [a.to_dict() for a in self.allowances],
            "pendingTransactions": [p.to_dict() for p in self.proposals],
            "errors": list(self.errors),
        }


def reconcile(
    ledger: Ledger,
    config: TreasuryConfig,
    proposals: Iterable[PendingProposal],
    now_minutes: int,
) -> TreasuryStatus:
    owners = ledger.get_owners()
    threshold = ledger.get_threshold()
    nonce = ledger.get_nonce()
    module = config.module_address
    module_enabled = ledger.is_module_enabled(module)

    status = TreasuryStatus(
        safe=ledger.safe_address,
        chain_id=config.chain_id,
        owners=owners,
        threshold=threshold,
        nonce=nonce,
        module=module,
        module_enabled=module_enabled,
        safe_balances={a.symbol: ledger.get_balance(ledger.safe_address, a.token) for a in config.assets},
    )

    delegates: list[str] = []
    if module_enabled:
        try:
            delegates = ledger.get_delegates(module)
        except LedgerError as e:
            logger.warning("Could not fetch delegates from %s: %s", module, e)
            status.errors.append(f"delegates: {e}")
    for delegate in delegates:
        status.delegate_balances[delegate] = {
            a.symbol: ledger.get_balance(delegate, a.token) for a in config.assets
        }
        for asset in config.assets:
            state = AllowanceState.from_chain(ledger.get_token_allowance(module, delegate, asset.token))
            if state.amount == 0:
                continue
            status.allowances.append(
                AllowanceView(
                    delegate=delegate,
                    symbol=asset.symbol,
                    token=asset.token,
                    state=state,
                    remaining=state.remaining(now_minutes),
                    reset_due=state.reset_due(now_minutes),
                    next_reset_min=state.next_reset_minutes(now_minutes),
                )
            )

    owner_set = set(owners)
    for proposal in sorted(proposals, key=lambda p: (p.nonce, p.created_at)):
        if proposal.nonce < nonce:
            continue
        signers = [s for s in proposal.signers if s in owner_set]
        status.proposals.append(
            ProposalView(
                commitment=proposal.commitment,
                nonce=proposal.nonce,
                to=proposal.transaction.to,
                value=proposal.transaction.value,
                confirmations=len(signers),
                required=threshold,
                executable=proposal.nonce == nonce and len(signers) >= threshold,
                signers=signers,
                missing_owners=[o for o in owners if o not in signers],
            )
        )
    return status
