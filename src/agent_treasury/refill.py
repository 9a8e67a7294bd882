"""
Delegate wallet refill through the allowance module.

For each configured asset the delegate's wallet balance is compared with the
low-water mark. Below it, the policy engine decides whether the refill amount
fits the remaining allowance; only an Allow leads to an unsigned
``executeAllowanceTransfer`` sent by the delegate itself. A failure on one
asset never stops the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .config import AssetConfig, TreasuryConfig
from .errors import LedgerError, StepRejected
from .ledger import Ledger, Receipt
from .policy import AllowanceState, Deny, decide_transfer, now_minutes
from .transaction import normalize_address
from .units import format_units

logger = logging.getLogger(__name__)


class RefillStatus(str, Enum):
    OK = "ok"  # balance above the low-water mark
    SKIPPED = "skipped"
    DENIED = "denied"
    SUBMITTED = "submitted"
    REVERTED = "reverted"
    FAILED = "failed"


@dataclass
class RefillOutcome:
    symbol: str
    status: RefillStatus
    balance: int
    amount: int = 0
    tx_hash: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "balance": format_units(self.balance),
            "amount": format_units(self.amount),
            "tx_hash": self.tx_hash,
            "reason": self.reason,
        }


class RefillService:
    """Tops up the delegate wallet from the account within its allowance."""

    def __init__(
        self,
        ledger: Ledger,
        config: TreasuryConfig,
        delegate: Optional[str] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], int] = now_minutes,
    ):
        self.ledger = ledger
        self.config = config
        sender = delegate or ledger.sender_address
        if sender is None:
            raise ValueError("Refill needs the delegate identity")
        self.delegate = normalize_address(sender)
        self.audit = audit
        self._clock = clock

    def run(self, dry_run: bool = False) -> list[RefillOutcome]:
        return [self.refill_asset(asset, dry_run=dry_run) for asset in self.config.assets]

    def refill_asset(self, asset: AssetConfig, dry_run: bool = False) -> RefillOutcome:
        try:
            balance = self.ledger.get_balance(self.delegate, asset.token)
        except LedgerError as e:
            logger.error("%s balance read failed: %s", asset.symbol, e)
            return RefillOutcome(asset.symbol, RefillStatus.FAILED, 0, reason=str(e))

        logger.info("%s balance: %s", asset.symbol, format_units(balance))
        if balance >= asset.low_threshold:
            return RefillOutcome(asset.symbol, RefillStatus.OK, balance)
        if asset.refill_amount == 0:
            return RefillOutcome(asset.symbol, RefillStatus.SKIPPED, balance, reason="refill amount is 0")

        module = self.config.module_address
        try:
            state = AllowanceState.from_chain(
                self.ledger.get_token_allowance(module, self.delegate, asset.token)
            )
            delegates = self.ledger.get_delegates(module)
        except LedgerError as e:
            logger.error("%s allowance read failed: %s", asset.symbol, e)
            return RefillOutcome(asset.symbol, RefillStatus.FAILED, balance, reason=str(e))

        decision = decide_transfer(
            state,
            asset.refill_amount,
            self._clock(),
            delegate=self.delegate,
            registered_delegates=delegates,
        )
        if isinstance(decision, Deny):
            reason = decision.describe()
            logger.warning("%s refill denied: %s", asset.symbol, reason)
            self._log(EventType.PULL_DENIED, asset, asset.refill_amount, success=False, reason=decision.reason.value)
            return RefillOutcome(asset.symbol, RefillStatus.DENIED, balance, asset.refill_amount, reason=reason)

        if dry_run:
            return RefillOutcome(
                asset.symbol, RefillStatus.SKIPPED, balance, asset.refill_amount, reason="dry run"
            )

        logger.info(
            "%s below %s, pulling %s from the account",
            asset.symbol, format_units(asset.low_threshold), format_units(asset.refill_amount),
        )
        try:
            receipt = self.ledger.execute_allowance_transfer(
                module, asset.token, self.delegate, asset.refill_amount, self.delegate
            )
        except LedgerError as e:
            logger.error("%s refill failed: %s", asset.symbol, e)
            self._log(EventType.PULL_FAILED, asset, asset.refill_amount, success=False, reason=str(e))
            return RefillOutcome(asset.symbol, RefillStatus.FAILED, balance, asset.refill_amount, reason=str(e))

        if not receipt.success:
            logger.error("%s refill reverted: %s", asset.symbol, receipt.tx_hash)
            self._log(EventType.PULL_FAILED, asset, asset.refill_amount, tx_hash=receipt.tx_hash, success=False, reason=receipt.reason)
            return RefillOutcome(
                asset.symbol, RefillStatus.REVERTED, balance, asset.refill_amount,
                tx_hash=receipt.tx_hash, reason=receipt.reason,
            )

        logger.info("%s refill OK: %s", asset.symbol, receipt.tx_hash)
        self._log(EventType.PULL_SUBMITTED, asset, asset.refill_amount, tx_hash=receipt.tx_hash)
        return RefillOutcome(
            asset.symbol, RefillStatus.SUBMITTED, balance, asset.refill_amount, tx_hash=receipt.tx_hash
        )

    def pull(self, asset: AssetConfig, amount: int, recipient: Optional[str] = None) -> Receipt:
        """Pull ``amount`` of ``asset`` from the account to ``recipient`` (default: the delegate).

        Raises PolicyDenied before submitting anything the module would reject,
        StepRejected when the module reverts anyway.
        """
        module = self.config.module_address
        state = AllowanceState.from_chain(
            self.ledger.get_token_allowance(module, self.delegate, asset.token)
        )
        decision = decide_transfer(
            state,
            amount,
            self._clock(),
            delegate=self.delegate,
            registered_delegates=self.ledger.get_delegates(module),
        )
        if isinstance(decision, Deny):
            logger.warning("%s pull denied: %s", asset.symbol, decision.describe())
            self._log(EventType.PULL_DENIED, asset, amount, success=False, reason=decision.reason.value)
            decision.raise_for_denial()

        receipt = self.ledger.execute_allowance_transfer(
            module, asset.token, normalize_address(recipient or self.delegate), amount, self.delegate
        )
        if not receipt.success:
            self._log(EventType.PULL_FAILED, asset, amount, tx_hash=receipt.tx_hash, success=False, reason=receipt.reason)
            raise StepRejected("executeAllowanceTransfer", receipt.tx_hash, receipt.reason or "reverted")
        self._log(EventType.PULL_SUBMITTED, asset, amount, tx_hash=receipt.tx_hash)
        return receipt

    def _log(self, event_type: EventType, asset: AssetConfig, amount: int, **fields) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            safe=self.ledger.safe_address,
            delegate=self.delegate,
            asset=asset.symbol,
            amount=amount,
            **fields,
        )
