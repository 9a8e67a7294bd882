"""
Execution sequencer for single-signer account setup.

Runs the fixed administrative pipeline against a threshold-1 account:

    1. enableModule(allowance module)
    2. addDelegate(agent)
    3. setAllowance(agent, asset) for each configured asset, in order

Each step is checked first and skipped when the chain already reflects it,
so a partially failed run can simply be re-run. Steps are strictly
sequential: every executed step consumes the account nonce the next step
signs over. After each write the sequencer waits the settle delay and then
re-reads the nonce under the retry policy until it has moved past the
consumed one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .config import TreasuryConfig
from .digest import commitment_hex, compute_commitment
from .errors import NotAnOwnerError, StepRejected, ThresholdTooHighError
from .keys import KeySigner
from .ledger import Ledger, RetryPolicy
from .policy import AllowanceState
from .signature import pack_signatures, sign_commitment
from .transaction import (
    AdminOperation,
    AllowanceUpdate,
    DelegateRegistration,
    ModuleActivation,
    normalize_address,
)

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    PLANNED = "planned"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    description: str
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None
    commitment: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "description": self.description,
            "tx_hash": self.tx_hash,
            "nonce": self.nonce,
            "commitment": self.commitment,
        }


@dataclass
class PipelineReport:
    safe: str
    signer: str
    delegate: str
    dry_run: bool
    steps: list[StepResult] = field(default_factory=list)
    module_enabled: Optional[bool] = None
    allowances: dict[str, dict] = field(default_factory=dict)

    @property
    def writes(self) -> int:
        return sum(1 for s in self.steps if s.status == StepStatus.EXECUTED)

    def to_dict(self) -> dict:
        return {
            "safe": self.safe,
            "signer": self.signer,
            "delegate": self.delegate,
            "dry_run": self.dry_run,
            "writes": self.writes,
            "steps": [s.to_dict() for s in self.steps],
            "module_enabled": self.module_enabled,
            "allowances": self.allowances,
        }


@dataclass(frozen=True)
class PipelineStep:
    name: str
    operation: AdminOperation
    satisfied: Callable[[], bool]


class ExecutionSequencer:
    """Applies the setup pipeline with one owner key on a threshold-1 account."""

    def __init__(
        self,
        ledger: Ledger,
        signer: KeySigner,
        config: TreasuryConfig,
        *,
        delegate: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        audit: Optional[AuditTrail] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.signer = signer
        self.config = config
        self.delegate = normalize_address(delegate or signer.address)
        self.retry_policy = retry_policy or config.retry_policy()
        self.audit = audit
        self._sleep = sleep

    def steps(self) -> list[PipelineStep]:
        module = self.config.module_address
        steps = [
            PipelineStep(
                name="enable_module",
                operation=ModuleActivation(module),
                satisfied=lambda: self.ledger.is_module_enabled(module),
            ),
            PipelineStep(
                name="add_delegate",
                operation=DelegateRegistration(module, self.delegate),
                satisfied=lambda: self.delegate in self.ledger.get_delegates(module),
            ),
        ]
        for asset in self.config.assets:
            update = AllowanceUpdate(
                module=module,
                delegate=self.delegate,
                token=asset.token,
                amount=asset.allowance,
                reset_time_min=self.config.reset_minutes,
            )
            steps.append(
                PipelineStep(
                    name=f"set_allowance_{asset.symbol.lower()}",
                    operation=update,
                    satisfied=lambda u=update: self._allowance_matches(u),
                )
            )
        return steps

    def check_preconditions(self) -> None:
        threshold = self.ledger.get_threshold()
        if threshold != 1:
            raise ThresholdTooHighError(threshold)
        owners = self.ledger.get_owners()
        if normalize_address(self.signer.address) not in owners:
            raise NotAnOwnerError(self.signer.address)
        logger.info("Threshold %d-of-%d, signer %s is an owner", threshold, len(owners), self.signer.address)

    def run(self, dry_run: bool = False) -> PipelineReport:
        self.check_preconditions()
        report = PipelineReport(
            safe=self.ledger.safe_address,
            signer=self.signer.address,
            delegate=self.delegate,
            dry_run=dry_run,
        )
        consumed: Optional[int] = None

        for step in self.steps():
            description = step.operation.describe()
            if step.satisfied():
                logger.info("%s: already applied, skipping", step.name)
                report.steps.append(StepResult(step.name, StepStatus.SKIPPED, description))
                self._log(EventType.STEP_SKIPPED, step.name, description)
                continue
            if dry_run:
                logger.info("%s: would execute %s", step.name, description)
                report.steps.append(StepResult(step.name, StepStatus.PLANNED, description))
                continue

            result = self._execute(step, self._next_nonce(consumed))
            report.steps.append(result)
            consumed = result.nonce
            if self.config.settle_seconds > 0:
                logger.info("Waiting %.1fs for RPC state to settle", self.config.settle_seconds)
                self._sleep(self.config.settle_seconds)

        if not dry_run:
            self._verify(report)
        return report

    def _next_nonce(self, consumed: Optional[int]) -> int:
        if consumed is None:
            return self.ledger.get_nonce()
        return self.retry_policy.read_until(
            "account nonce",
            self.ledger.get_nonce,
            lambda nonce: nonce > consumed,
        )

    def _execute(self, step: PipelineStep, nonce: int) -> StepResult:
        description = step.operation.describe()
        domain_separator = self.ledger.get_domain_separator()
        tx = step.operation.build(self.ledger.safe_address, nonce)
        commitment = compute_commitment(domain_separator, tx)
        key = commitment_hex(commitment)
        signature = sign_commitment(self.signer, commitment)

        logger.info("%s: executing %s at nonce %d (%s)", step.name, description, nonce, key)
        receipt = self.ledger.exec_transaction(tx, pack_signatures([(self.signer.address, signature)]))
        if not receipt.success:
            self._log(
                EventType.STEP_REJECTED,
                step.name,
                description,
                commitment=key,
                nonce=nonce,
                tx_hash=receipt.tx_hash,
                success=False,
                reason=receipt.reason,
            )
            raise StepRejected(step.name, receipt.tx_hash, receipt.reason or "reverted")

        logger.info("%s: OK tx %s", step.name, receipt.tx_hash)
        self._log(
            EventType.STEP_EXECUTED,
            step.name,
            description,
            commitment=key,
            nonce=nonce,
            tx_hash=receipt.tx_hash,
        )
        return StepResult(
            name=step.name,
            status=StepStatus.EXECUTED,
            description=description,
            tx_hash=receipt.tx_hash,
            nonce=nonce,
            commitment=key,
        )

    def _allowance_matches(self, update: AllowanceUpdate) -> bool:
        state = AllowanceState.from_chain(
            self.ledger.get_token_allowance(update.module, update.delegate, update.token)
        )
        return state.amount == update.amount and state.reset_time_min == update.reset_time_min

    def _verify(self, report: PipelineReport) -> None:
        module = self.config.module_address
        report.module_enabled = self.ledger.is_module_enabled(module)
        for asset in self.config.assets:
            state = AllowanceState.from_chain(
                self.ledger.get_token_allowance(module, self.delegate, asset.token)
            )
            report.allowances[asset.symbol] = state.to_dict()

    def _log(self, event_type: EventType, step: str, description: str, **fields) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            safe=self.ledger.safe_address,
            signer=self.signer.address,
            details={"step": step, "operation": description},
            **fields,
        )
