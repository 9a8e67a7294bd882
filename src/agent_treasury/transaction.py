"""
Safe transaction model and administrative operations.

A SafeTransaction is the canonical, immutable description of one intended
state change of the account at one nonce. Administrative intents are closed
variants that each know how to build their SafeTransaction; nothing infers
intent from free-form command names.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Mapping, Union

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from .errors import EncodingError
from .units import format_units, require_uint96


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
UINT16_MAX = 2**16 - 1
UINT32_MAX = 2**32 - 1
UINT256_MAX = 2**256 - 1


class Operation(IntEnum):
    CALL = 0
    DELEGATE_CALL = 1


def normalize_address(address: str) -> str:
    """Validate a 20-byte address and return its EIP-55 checksum form."""
    candidate = str(address).strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not candidate.startswith("0x") or not is_address(candidate.lower()):
        raise EncodingError(f"Invalid address: {address}")
    return to_checksum_address(candidate.lower())


def encode_call(signature: str, types: list[str], args: list[Any]) -> bytes:
    """ABI-encode a contract call: 4-byte selector followed by the encoded arguments."""
    return function_signature_to_4byte_selector(signature) + abi_encode(types, args)


def parse_hex_data(value: str | bytes | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise EncodingError(f"Call data is not valid hex: {value!r}") from e


@dataclass(frozen=True)
class SafeTransaction:
    """One Safe transaction. Fee fields are fixed at zero in this system."""

    to: str
    value: int
    data: bytes
    operation: Operation
    nonce: int
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS

    def __post_init__(self):
        object.__setattr__(self, "to", normalize_address(self.to))
        object.__setattr__(self, "data", parse_hex_data(self.data))
        object.__setattr__(self, "operation", Operation(int(self.operation)))
        object.__setattr__(self, "gas_token", normalize_address(self.gas_token))
        object.__setattr__(self, "refund_receiver", normalize_address(self.refund_receiver))
        for name in ("value", "nonce", "safe_tx_gas", "base_gas", "gas_price"):
            raw = getattr(self, name)
            if isinstance(raw, bool) or not isinstance(raw, int) or not 0 <= raw <= UINT256_MAX:
                raise EncodingError(f"{name} must be a uint256, got {raw!r}")

    def with_nonce(self, nonce: int) -> SafeTransaction:
        return replace(self, nonce=nonce)

    def to_dict(self) -> dict:
        return {
            "to": self.to,
            "value": str(self.value),
            "data": "0x" + self.data.hex(),
            "operation": int(self.operation),
            "safeTxGas": str(self.safe_tx_gas),
            "baseGas": str(self.base_gas),
            "gasPrice": str(self.gas_price),
            "gasToken": self.gas_token,
            "refundReceiver": self.refund_receiver,
            "nonce": str(self.nonce),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> SafeTransaction:
        return cls(
            to=str(d["to"]),
            value=int(d.get("value", 0) or 0),
            data=parse_hex_data(d.get("data")),
            operation=Operation(int(d.get("operation", 0))),
            nonce=int(d["nonce"]),
            safe_tx_gas=int(d.get("safeTxGas", 0) or 0),
            base_gas=int(d.get("baseGas", 0) or 0),
            gas_price=int(d.get("gasPrice", 0) or 0),
            gas_token=str(d.get("gasToken") or ZERO_ADDRESS),
            refund_receiver=str(d.get("refundReceiver") or ZERO_ADDRESS),
        )


# ---------------------------------------------------------------------------
# Administrative operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModuleActivation:
    """enableModule(module) on the Safe itself."""

    module: str

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        data = encode_call("enableModule(address)", ["address"], [normalize_address(self.module)])
        return SafeTransaction(to=safe, value=0, data=data, operation=Operation.CALL, nonce=nonce)

    def describe(self) -> str:
        return f"enableModule({self.module})"


@dataclass(frozen=True)
class DelegateRegistration:
    """addDelegate(delegate) on the allowance module."""

    module: str
    delegate: str

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        data = encode_call("addDelegate(address)", ["address"], [normalize_address(self.delegate)])
        return SafeTransaction(to=self.module, value=0, data=data, operation=Operation.CALL, nonce=nonce)

    def describe(self) -> str:
        return f"addDelegate({self.delegate})"


@dataclass(frozen=True)
class AllowanceUpdate:
    """setAllowance(delegate, token, amount, resetTimeMin, resetBaseMin) on the module."""

    module: str
    delegate: str
    token: str
    amount: int
    reset_time_min: int
    reset_base_min: int = 0

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        require_uint96(self.amount, "allowance amount")
        if not 0 <= self.reset_time_min <= UINT16_MAX:
            raise EncodingError(f"reset_time_min out of uint16 range: {self.reset_time_min}")
        if not 0 <= self.reset_base_min <= UINT32_MAX:
            raise EncodingError(f"reset_base_min out of uint32 range: {self.reset_base_min}")
        data = encode_call(
            "setAllowance(address,address,uint96,uint16,uint32)",
            ["address", "address", "uint96", "uint16", "uint32"],
            [
                normalize_address(self.delegate),
                normalize_address(self.token),
                self.amount,
                self.reset_time_min,
                self.reset_base_min,
            ],
        )
        return SafeTransaction(to=self.module, value=0, data=data, operation=Operation.CALL, nonce=nonce)

    def describe(self) -> str:
        return (
            f"setAllowance({self.delegate}, {self.token}, {format_units(self.amount)}, "
            f"{self.reset_time_min}min)"
        )


@dataclass(frozen=True)
class ThresholdChange:
    """changeThreshold(threshold) on the Safe itself."""

    threshold: int

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        if self.threshold < 1:
            raise EncodingError("threshold must be >= 1")
        data = encode_call("changeThreshold(uint256)", ["uint256"], [self.threshold])
        return SafeTransaction(to=safe, value=0, data=data, operation=Operation.CALL, nonce=nonce)

    def describe(self) -> str:
        return f"changeThreshold({self.threshold})"


@dataclass(frozen=True)
class TokenTransfer:
    """Move funds out of the Safe. The zero-address token means the native asset."""

    token: str
    recipient: str
    amount: int

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        if self.amount <= 0:
            raise EncodingError("transfer amount must be > 0")
        recipient = normalize_address(self.recipient)
        if normalize_address(self.token) == ZERO_ADDRESS:
            return SafeTransaction(to=recipient, value=self.amount, data=b"", operation=Operation.CALL, nonce=nonce)
        data = encode_call("transfer(address,uint256)", ["address", "uint256"], [recipient, self.amount])
        return SafeTransaction(to=self.token, value=0, data=data, operation=Operation.CALL, nonce=nonce)

    def describe(self) -> str:
        return f"transfer({self.token}, {self.recipient}, {format_units(self.amount)})"


@dataclass(frozen=True)
class RawCall:
    """Arbitrary call or delegate call from the Safe."""

    to: str
    value: int = 0
    data: bytes = b""
    operation: Operation = Operation.CALL

    def build(self, safe: str, nonce: int) -> SafeTransaction:
        return SafeTransaction(to=self.to, value=self.value, data=self.data, operation=self.operation, nonce=nonce)

    def describe(self) -> str:
        kind = "delegatecall" if self.operation == Operation.DELEGATE_CALL else "call"
        return f"{kind}({self.to}, value={self.value}, data={len(parse_hex_data(self.data))} bytes)"


AdminOperation = Union[
    ModuleActivation,
    DelegateRegistration,
    AllowanceUpdate,
    ThresholdChange,
    TokenTransfer,
    RawCall,
]
