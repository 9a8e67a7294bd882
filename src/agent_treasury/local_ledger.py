"""In-process stand-in for a Safe with the AllowanceModule attached.

This adapter enforces the same signature, nonce, threshold and allowance
semantics expected from the real contracts and is suitable for local
development and tests. Several ``LocalLedger`` handles may share one
``LocalChain`` to act as different senders against the same account.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from eth_abi import decode as abi_decode
from eth_utils import function_signature_to_4byte_selector, keccak

from .deploy import PROXY_CREATION_TOPIC, SAFE_PROXY_FACTORY, SETUP_SIGNATURE, SETUP_TYPES
from .digest import compute_commitment, compute_domain_separator
from .errors import EncodingError, LedgerError
from .ledger import Receipt
from .policy import now_minutes
from .signature import SIGNATURE_LENGTH, recover_signer
from .transaction import ZERO_ADDRESS, Operation, SafeTransaction, normalize_address

logger = logging.getLogger(__name__)


def _selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


_ENABLE_MODULE = _selector("enableModule(address)")
_CHANGE_THRESHOLD = _selector("changeThreshold(uint256)")
_ADD_DELEGATE = _selector("addDelegate(address)")
_SET_ALLOWANCE = _selector("setAllowance(address,address,uint96,uint16,uint32)")
_ERC20_TRANSFER = _selector("transfer(address,uint256)")
_SETUP = _selector(SETUP_SIGNATURE)


class _Revert(Exception):
    pass


@dataclass
class LocalChain:
    """Shared state of one simulated account."""

    safe_address: str
    owners: list[str]
    threshold: int
    chain_id: int = 8453
    nonce: int = 0
    modules: set[str] = field(default_factory=set)
    delegates: dict[str, list[str]] = field(default_factory=dict)  # module -> delegates
    allowances: dict[tuple[str, str, str], list[int]] = field(default_factory=dict)  # (module, delegate, token)
    balances: dict[tuple[str, str], int] = field(default_factory=dict)  # (holder, token)
    clock: Callable[[], int] = now_minutes
    stale_reads_after_write: int = 0
    writes: int = 0
    tx_count: int = 0
    _stale_nonce: Optional[int] = field(default=None, init=False, repr=False)
    _stale_remaining: int = field(default=0, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.safe_address = normalize_address(self.safe_address)
        self.owners = [normalize_address(o) for o in self.owners]
        if not 1 <= self.threshold <= len(self.owners):
            raise ValueError("threshold must be between 1 and the owner count")

    @property
    def domain_separator(self) -> bytes:
        return compute_domain_separator(self.chain_id, self.safe_address)

    def ledger(self, sender: Optional[str] = None) -> LocalLedger:
        return LocalLedger(self, sender)

    def fund(self, holder: str, amount: int, token: str = ZERO_ADDRESS) -> None:
        key = (normalize_address(holder), normalize_address(token))
        with self._lock:
            self.balances[key] = self.balances.get(key, 0) + amount

    def balance_of(self, holder: str, token: str = ZERO_ADDRESS) -> int:
        return self.balances.get((normalize_address(holder), normalize_address(token)), 0)

    def _next_tx_hash(self, kind: str) -> str:
        self.tx_count += 1
        return "0x" + keccak(text=f"{kind}:{self.safe_address}:{self.tx_count}").hex()

    def _after_write(self, previous_nonce: int) -> None:
        self.writes += 1
        if self.stale_reads_after_write > 0:
            self._stale_nonce = previous_nonce
            self._stale_remaining = self.stale_reads_after_write

    def _move(self, token: str, source: str, dest: str, amount: int) -> None:
        src_key = (source, token)
        if self.balances.get(src_key, 0) < amount:
            raise _Revert("insufficient balance")
        self.balances[src_key] -= amount
        dest_key = (dest, token)
        self.balances[dest_key] = self.balances.get(dest_key, 0) + amount


class LocalLedger:
    """Ledger view of a ``LocalChain`` for one sending identity."""

    def __init__(self, chain: LocalChain, sender: Optional[str] = None):
        self.chain = chain
        self._sender = normalize_address(sender) if sender else None

    @property
    def safe_address(self) -> str:
        return self.chain.safe_address

    @property
    def sender_address(self) -> Optional[str]:
        return self._sender

    # -- reads -------------------------------------------------------------

    def get_owners(self) -> list[str]:
        with self.chain._lock:
            return list(self.chain.owners)

    def get_threshold(self) -> int:
        return self.chain.threshold

    def get_nonce(self) -> int:
        chain = self.chain
        with chain._lock:
            if chain._stale_remaining > 0 and chain._stale_nonce is not None:
                chain._stale_remaining -= 1
                return chain._stale_nonce
            return chain.nonce

    def get_domain_separator(self) -> bytes:
        return self.chain.domain_separator

    def is_module_enabled(self, module: str) -> bool:
        return normalize_address(module) in self.chain.modules

    def get_delegates(self, module: str, start: int = 0, page_size: int = 50) -> list[str]:
        with self.chain._lock:
            return list(self.chain.delegates.get(normalize_address(module), []))

    def get_token_allowance(self, module: str, delegate: str, token: str) -> list[int]:
        key = (normalize_address(module), normalize_address(delegate), normalize_address(token))
        with self.chain._lock:
            return list(self.chain.allowances.get(key, [0, 0, 0, 0, 0]))

    def get_balance(self, address: str, token: str = ZERO_ADDRESS) -> int:
        return self.chain.balance_of(address, token)

    # -- writes ------------------------------------------------------------

    def exec_transaction(self, tx: SafeTransaction, signatures: bytes) -> Receipt:
        chain = self.chain
        with chain._lock:
            tx_hash = chain._next_tx_hash("exec")
            if tx.nonce != chain.nonce:
                return self._reverted(tx_hash, f"nonce {tx.nonce} != {chain.nonce}")
            commitment = compute_commitment(chain.domain_separator, tx)
            try:
                self._check_signatures(commitment, bytes(signatures))
            except _Revert as e:
                return self._reverted(tx_hash, str(e))

            snapshot = self._snapshot()
            previous = chain.nonce
            chain.nonce += 1
            try:
                self._apply(tx)
            except _Revert as e:
                self._restore(snapshot)
                return self._reverted(tx_hash, str(e))
            chain._after_write(previous)
            logger.info("execTransaction nonce %d applied (%s)", previous, tx_hash)
            return Receipt(tx_hash=tx_hash, success=True, block_number=chain.tx_count)

    def execute_allowance_transfer(
        self, module: str, token: str, to: str, amount: int, delegate: str
    ) -> Receipt:
        chain = self.chain
        module = normalize_address(module)
        token = normalize_address(token)
        delegate = normalize_address(delegate)
        with chain._lock:
            tx_hash = chain._next_tx_hash("pull")
            try:
                if self._sender != delegate:
                    # empty signature is only accepted from the delegate itself
                    raise _Revert("invalid signature")
                if module not in chain.modules:
                    raise _Revert("module not enabled")
                if delegate not in chain.delegates.get(module, []):
                    raise _Revert("delegate not registered")
                allowance = chain.allowances.get((module, delegate, token))
                if allowance is None:
                    raise _Revert("no allowance")
                amount_limit, spent, reset_time, last_reset, nonce = allowance
                current = chain.clock()
                if reset_time > 0 and last_reset <= current - reset_time:
                    spent = 0
                    last_reset = current - ((current - last_reset) % reset_time)
                new_spent = spent + amount
                if new_spent > amount_limit or new_spent <= spent:
                    raise _Revert("newSpent > amount")
                chain._move(token, chain.safe_address, normalize_address(to), amount)
            except _Revert as e:
                return self._reverted(tx_hash, str(e))
            chain.allowances[(module, delegate, token)] = [
                amount_limit, new_spent, reset_time, last_reset, nonce + 1
            ]
            chain._after_write(chain.nonce)
            logger.info("Allowance transfer of %d to %s (%s)", amount, to, tx_hash)
            return Receipt(tx_hash=tx_hash, success=True, block_number=chain.tx_count)

    # -- contract semantics --------------------------------------------------

    def _check_signatures(self, commitment: bytes, signatures: bytes) -> None:
        chain = self.chain
        if len(signatures) < chain.threshold * SIGNATURE_LENGTH:
            raise _Revert("signatures data too short")
        last_owner = 0
        for i in range(chain.threshold):
            chunk = signatures[i * SIGNATURE_LENGTH:(i + 1) * SIGNATURE_LENGTH]
            try:
                owner = recover_signer(commitment, chunk)
            except EncodingError as e:
                raise _Revert(f"invalid signature: {e}") from e
            if int(owner, 16) <= last_owner or owner not in chain.owners:
                raise _Revert("invalid owner provided")
            last_owner = int(owner, 16)

    def _apply(self, tx: SafeTransaction) -> None:
        chain = self.chain
        if tx.operation != Operation.CALL:
            raise _Revert("delegate calls are not simulated")
        if tx.value:
            chain._move(ZERO_ADDRESS, chain.safe_address, tx.to, tx.value)
        if len(tx.data) < 4:
            return
        selector, args = tx.data[:4], tx.data[4:]

        if tx.to == chain.safe_address:
            if selector == _ENABLE_MODULE:
                (module,) = abi_decode(["address"], args)
                module = normalize_address(module)
                if module in chain.modules or module == ZERO_ADDRESS:
                    raise _Revert("module already enabled")
                chain.modules.add(module)
            elif selector == _CHANGE_THRESHOLD:
                (threshold,) = abi_decode(["uint256"], args)
                if not 1 <= threshold <= len(chain.owners):
                    raise _Revert("threshold out of range")
                chain.threshold = threshold
            else:
                raise _Revert("unsupported self call")
            return

        if selector == _ADD_DELEGATE:
            (delegate,) = abi_decode(["address"], args)
            listed = chain.delegates.setdefault(tx.to, [])
            delegate = normalize_address(delegate)
            if delegate not in listed:
                listed.append(delegate)
        elif selector == _SET_ALLOWANCE:
            delegate, token, amount, reset_time, reset_base = abi_decode(
                ["address", "address", "uint96", "uint16", "uint32"], args
            )
            delegate = normalize_address(delegate)
            if delegate not in chain.delegates.get(tx.to, []):
                raise _Revert("delegate not registered")
            key = (tx.to, delegate, normalize_address(token))
            current = chain.clock()
            _, spent, _, last_reset, nonce = chain.allowances.get(key, [0, 0, 0, 0, 1])
            if reset_base > 0:
                if reset_base > current or reset_time == 0:
                    raise _Revert("invalid reset base")
                last_reset = current - ((current - reset_base) % reset_time)
            elif last_reset == 0:
                last_reset = current
            chain.allowances[key] = [amount, spent, reset_time, last_reset, nonce]
        elif selector == _ERC20_TRANSFER:
            recipient, amount = abi_decode(["address", "uint256"], args)
            chain._move(tx.to, chain.safe_address, normalize_address(recipient), amount)

    def _snapshot(self) -> tuple:
        chain = self.chain
        return (
            chain.nonce,
            chain.threshold,
            set(chain.modules),
            {k: list(v) for k, v in chain.delegates.items()},
            {k: list(v) for k, v in chain.allowances.items()},
            dict(chain.balances),
        )

    def _restore(self, snapshot: tuple) -> None:
        chain = self.chain
        (chain.nonce, chain.threshold, chain.modules, chain.delegates,
         chain.allowances, chain.balances) = snapshot

    def _reverted(self, tx_hash: str, reason: str) -> Receipt:
        logger.warning("Local transaction %s reverted: %s", tx_hash, reason)
        return Receipt(tx_hash=tx_hash, success=False, block_number=self.chain.tx_count, reason=reason)



class LocalSafeFactory:
    """Proxy factory that creates ``LocalChain`` accounts from a ``setup`` initializer.

    Created accounts land in ``chains`` keyed by address, which several
    factories (one per sender) may share.
    """

    def __init__(
        self,
        sender: Optional[str] = None,
        chains: Optional[dict[str, LocalChain]] = None,
        chain_id: int = 8453,
        clock: Callable[[], int] = now_minutes,
        factory_address: str = SAFE_PROXY_FACTORY,
    ):
        self._sender = normalize_address(sender) if sender else None
        self.chains = chains if chains is not None else {}
        self.chain_id = chain_id
        self.clock = clock
        self.factory_address = normalize_address(factory_address)
        self.gas_balances: dict[str, int] = {}
        self.tx_count = 0

    @property
    def sender_address(self) -> Optional[str]:
        return self._sender

    def fund(self, holder: str, amount: int) -> None:
        key = normalize_address(holder)
        self.gas_balances[key] = self.gas_balances.get(key, 0) + amount

    def get_balance(self, address: str) -> int:
        return self.gas_balances.get(normalize_address(address), 0)

    def proxy_address(self, initializer: bytes, salt_nonce: int) -> str:
        salt = keccak(keccak(initializer) + salt_nonce.to_bytes(32, "big"))
        return normalize_address("0x" + keccak(bytes.fromhex(self.factory_address[2:]) + salt)[12:].hex())

    def create_proxy(self, singleton: str, initializer: bytes, salt_nonce: int) -> Receipt:
        if self._sender is None:
            raise LedgerError("createProxyWithNonce needs a sending account")
        self.tx_count += 1
        tx_hash = "0x" + keccak(text=f"deploy:{self.factory_address}:{self.tx_count}").hex()
        if initializer[:4] != _SETUP:
            return self._reverted(tx_hash, "initializer is not a setup call")
        owners, threshold, *_ = abi_decode(SETUP_TYPES, initializer[4:])
        address = self.proxy_address(initializer, salt_nonce)
        if address in self.chains:
            return self._reverted(tx_hash, "Create2 call failed")
        try:
            chain = LocalChain(
                safe_address=address,
                owners=list(owners),
                threshold=threshold,
                chain_id=self.chain_id,
                clock=self.clock,
            )
        except ValueError:
            return self._reverted(tx_hash, "GS201")
        self.chains[address] = chain
        topics = (PROXY_CREATION_TOPIC, "0x" + "00" * 12 + address[2:].lower())
        return Receipt(
            tx_hash=tx_hash,
            success=True,
            block_number=self.tx_count,
            logs=((self.factory_address, topics),),
        )

    def _reverted(self, tx_hash: str, reason: str) -> Receipt:
        logger.warning("Local deployment %s reverted: %s", tx_hash, reason)
        return Receipt(tx_hash=tx_hash, success=False, block_number=self.tx_count, reason=reason)
