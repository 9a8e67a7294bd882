"""
Ledger collaborator: Safe and AllowanceModule reads and writes.

Everything that touches the chain goes through a ``Ledger``. Reads that must
observe a write which just confirmed go through a ``RetryPolicy`` because the
RPC read path can lag the write path by a few blocks.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence, TypeVar

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .errors import LedgerError, StaleRead
from .transaction import ZERO_ADDRESS, SafeTransaction, normalize_address
from .units import require_uint96

logger = logging.getLogger(__name__)

T = TypeVar("T")


SAFE_ABI = [
    {"type": "function", "name": "getOwners", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address[]"}]},
    {"type": "function", "name": "getThreshold", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "nonce", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "domainSeparator", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "bytes32"}]},
    {"type": "function", "name": "isModuleEnabled", "stateMutability": "view",
     "inputs": [{"name": "module", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "execTransaction", "stateMutability": "payable",
     "inputs": [
         {"name": "to", "type": "address"},
         {"name": "value", "type": "uint256"},
         {"name": "data", "type": "bytes"},
         {"name": "operation", "type": "uint8"},
         {"name": "safeTxGas", "type": "uint256"},
         {"name": "baseGas", "type": "uint256"},
         {"name": "gasPrice", "type": "uint256"},
         {"name": "gasToken", "type": "address"},
         {"name": "refundReceiver", "type": "address"},
         {"name": "signatures", "type": "bytes"},
     ],
     "outputs": [{"name": "success", "type": "bool"}]},
]

ALLOWANCE_MODULE_ABI = [
    {"type": "function", "name": "getDelegates", "stateMutability": "view",
     "inputs": [
         {"name": "safe", "type": "address"},
         {"name": "start", "type": "uint48"},
         {"name": "pageSize", "type": "uint8"},
     ],
     "outputs": [{"name": "results", "type": "address[]"}, {"name": "next", "type": "uint48"}]},
    {"type": "function", "name": "getTokenAllowance", "stateMutability": "view",
     "inputs": [
         {"name": "safe", "type": "address"},
         {"name": "delegate", "type": "address"},
         {"name": "token", "type": "address"},
     ],
     "outputs": [{"name": "", "type": "uint256[5]"}]},
    {"type": "function", "name": "executeAllowanceTransfer", "stateMutability": "nonpayable",
     "inputs": [
         {"name": "safe", "type": "address"},
         {"name": "token", "type": "address"},
         {"name": "to", "type": "address"},
         {"name": "amount", "type": "uint96"},
         {"name": "paymentToken", "type": "address"},
         {"name": "payment", "type": "uint96"},
         {"name": "delegate", "type": "address"},
         {"name": "signature", "type": "bytes"},
     ],
     "outputs": []},
]

ERC20_ABI = [
    {"type": "function", "name": "balanceOf", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
]


@dataclass(frozen=True)
class Receipt:
    """Outcome of one submitted ledger transaction."""

    tx_hash: Optional[str]
    success: bool
    block_number: Optional[int] = None
    reason: Optional[str] = None
    logs: tuple[tuple[str, tuple[str, ...]], ...] = field(default=(), repr=False)  # (emitter, topics)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded re-read schedule for replication lag: ``max_attempts`` reads, doubling backoff."""

    max_attempts: int = 5
    backoff: float = 2.0
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")

    def read_until(self, what: str, read: Callable[[], T], accept: Callable[[T], bool]) -> T:
        """Call ``read`` until ``accept`` holds; raise StaleRead once attempts run out."""
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            value = read()
            if accept(value):
                return value
            if attempt < self.max_attempts:
                logger.warning(
                    "Stale read of %s (attempt %d/%d), retrying in %.1fs",
                    what, attempt, self.max_attempts, delay,
                )
                self.sleep(delay)
                delay *= self.multiplier
        raise StaleRead(what, self.max_attempts)


class Ledger(Protocol):
    @property
    def safe_address(self) -> str: ...

    @property
    def sender_address(self) -> Optional[str]: ...

    def get_owners(self) -> list[str]: ...

    def get_threshold(self) -> int: ...

    def get_nonce(self) -> int: ...

    def get_domain_separator(self) -> bytes: ...

    def is_module_enabled(self, module: str) -> bool: ...

    def get_delegates(self, module: str, start: int = 0, page_size: int = 50) -> list[str]: ...

    def get_token_allowance(self, module: str, delegate: str, token: str) -> Sequence[int]: ...

    def get_balance(self, address: str, token: str = ZERO_ADDRESS) -> int: ...

    def exec_transaction(self, tx: SafeTransaction, signatures: bytes) -> Receipt: ...

    def execute_allowance_transfer(
        self, module: str, token: str, to: str, amount: int, delegate: str
    ) -> Receipt: ...


class Web3Ledger:
    """Ledger backed by a JSON-RPC node through web3.

    Writes are signed locally with ``sender`` and block until the receipt
    arrives. A call that the node rejects during gas estimation is returned
    as a failed receipt, the same as an on-chain revert.
    """

    def __init__(
        self,
        rpc_url: str,
        safe_address: str,
        sender: Optional[LocalAccount] = None,
        chain_id: Optional[int] = None,
        receipt_timeout: float = 600.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self._safe_address = normalize_address(safe_address)
        self._sender = sender
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._safe = self.w3.eth.contract(address=self._safe_address, abi=SAFE_ABI)

    @property
    def safe_address(self) -> str:
        return self._safe_address

    @property
    def sender_address(self) -> Optional[str]:
        return self._sender.address if self._sender is not None else None

    def _module(self, module: str):
        return self.w3.eth.contract(address=normalize_address(module), abi=ALLOWANCE_MODULE_ABI)

    def _call(self, what: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (Web3Exception, OSError, ValueError) as e:
            raise LedgerError(f"{what} failed: {e}") from e

    # -- reads -------------------------------------------------------------

    def get_owners(self) -> list[str]:
        owners = self._call("getOwners", lambda: self._safe.functions.getOwners().call())
        return [normalize_address(o) for o in owners]

    def get_threshold(self) -> int:
        return int(self._call("getThreshold", lambda: self._safe.functions.getThreshold().call()))

    def get_nonce(self) -> int:
        return int(self._call("nonce", lambda: self._safe.functions.nonce().call()))

    def get_domain_separator(self) -> bytes:
        value = self._call("domainSeparator", lambda: self._safe.functions.domainSeparator().call())
        return bytes(value)

    def is_module_enabled(self, module: str) -> bool:
        target = normalize_address(module)
        return bool(
            self._call("isModuleEnabled", lambda: self._safe.functions.isModuleEnabled(target).call())
        )

    def get_delegates(self, module: str, start: int = 0, page_size: int = 50) -> list[str]:
        contract = self._module(module)
        delegates: list[str] = []
        cursor = start
        while True:
            results, nxt = self._call(
                "getDelegates",
                lambda c=cursor: contract.functions.getDelegates(self._safe_address, c, page_size).call(),
            )
            delegates.extend(normalize_address(d) for d in results)
            if not nxt:
                return delegates
            cursor = nxt

    def get_token_allowance(self, module: str, delegate: str, token: str) -> list[int]:
        contract = self._module(module)
        values = self._call(
            "getTokenAllowance",
            lambda: contract.functions.getTokenAllowance(
                self._safe_address, normalize_address(delegate), normalize_address(token)
            ).call(),
        )
        return [int(v) for v in values]

    def get_balance(self, address: str, token: str = ZERO_ADDRESS) -> int:
        holder = normalize_address(address)
        asset = normalize_address(token)
        if asset == ZERO_ADDRESS:
            return int(self._call("getBalance", lambda: self.w3.eth.get_balance(holder)))
        erc20 = self.w3.eth.contract(address=asset, abi=ERC20_ABI)
        return int(self._call("balanceOf", lambda: erc20.functions.balanceOf(holder).call()))

    # -- writes ------------------------------------------------------------

    def exec_transaction(self, tx: SafeTransaction, signatures: bytes) -> Receipt:
        fn = self._safe.functions.execTransaction(
            tx.to,
            tx.value,
            tx.data,
            int(tx.operation),
            tx.safe_tx_gas,
            tx.base_gas,
            tx.gas_price,
            tx.gas_token,
            tx.refund_receiver,
            bytes(signatures),
        )
        return self._send(fn, "execTransaction")

    def execute_allowance_transfer(
        self, module: str, token: str, to: str, amount: int, delegate: str
    ) -> Receipt:
        require_uint96(amount, "transfer amount")
        fn = self._module(module).functions.executeAllowanceTransfer(
            self._safe_address,
            normalize_address(token),
            normalize_address(to),
            amount,
            ZERO_ADDRESS,
            0,
            normalize_address(delegate),
            b"",
        )
        return self._send(fn, "executeAllowanceTransfer")

    def _send(self, fn, what: str) -> Receipt:
        return _send_transaction(self.w3, self._sender, self.chain_id, self.receipt_timeout, fn, what)


SAFE_PROXY_FACTORY_ABI = [
    {"type": "function", "name": "createProxyWithNonce", "stateMutability": "nonpayable",
     "inputs": [{"name": "_singleton", "type": "address"}, {"name": "initializer", "type": "bytes"},
                {"name": "saltNonce", "type": "uint256"}],
     "outputs": [{"name": "proxy", "type": "address"}]},
]


class Web3SafeFactory:
    """Safe proxy factory reached through the same JSON-RPC node as ``Web3Ledger``."""

    def __init__(
        self,
        rpc_url: str,
        factory_address: str,
        sender: Optional[LocalAccount] = None,
        chain_id: Optional[int] = None,
        receipt_timeout: float = 600.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.factory_address = normalize_address(factory_address)
        self._sender = sender
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._factory = self.w3.eth.contract(address=self.factory_address, abi=SAFE_PROXY_FACTORY_ABI)

    @property
    def sender_address(self) -> Optional[str]:
        return self._sender.address if self._sender is not None else None

    def get_balance(self, address: str) -> int:
        holder = normalize_address(address)
        try:
            return int(self.w3.eth.get_balance(holder))
        except (Web3Exception, OSError, ValueError) as e:
            raise LedgerError(f"getBalance failed: {e}") from e

    def create_proxy(self, singleton: str, initializer: bytes, salt_nonce: int) -> Receipt:
        fn = self._factory.functions.createProxyWithNonce(
            normalize_address(singleton), bytes(initializer), salt_nonce
        )
        return _send_transaction(self.w3, self._sender, self.chain_id, self.receipt_timeout, fn, "createProxyWithNonce")


def _send_transaction(
    w3: Web3, account: Optional[LocalAccount], chain_id: Optional[int], timeout: float, fn, what: str
) -> Receipt:
    if account is None:
        raise LedgerError(f"{what} needs a sending account")
    sender = account.address
    try:
        params = {"from": sender, "nonce": w3.eth.get_transaction_count(sender)}
        if chain_id is not None:
            params["chainId"] = chain_id
        tx = fn.build_transaction(params)
    except ContractLogicError as e:
        logger.warning("%s rejected before submission: %s", what, e)
        return Receipt(tx_hash=None, success=False, reason=str(e))
    except (Web3Exception, OSError, ValueError) as e:
        raise LedgerError(f"{what} could not be built: {e}") from e

    signed = account.sign_transaction(tx)
    try:
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("%s sent: %s", what, Web3.to_hex(tx_hash))
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    except (Web3Exception, OSError, ValueError) as e:
        raise LedgerError(f"{what} submission failed: {e}") from e

    success = receipt["status"] == 1
    return Receipt(
        tx_hash=Web3.to_hex(tx_hash),
        success=success,
        block_number=receipt["blockNumber"],
        reason=None if success else "reverted",
        logs=tuple(
            (normalize_address(log["address"]), tuple(Web3.to_hex(t) for t in log["topics"]))
            for log in receipt.get("logs", [])
        ),
    )
