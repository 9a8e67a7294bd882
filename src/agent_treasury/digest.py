"""
Commitment hashing for Safe transactions.

The commitment is the EIP-712 digest the Safe contract itself recomputes in
execTransaction:

    keccak256(0x19 0x01 || domainSeparator || keccak256(abi.encode(
        SAFE_TX_TYPEHASH, to, value, keccak256(data), operation,
        safeTxGas, baseGas, gasPrice, gasToken, refundReceiver, nonce)))

Field order, the pre-hashed payload and the zero fee fields must match the
verifying contract exactly or every signature over the result is rejected.
"""

from __future__ import annotations

from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import keccak

from .errors import EncodingError
from .transaction import SafeTransaction, normalize_address


SAFE_TX_TYPE = (
    "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
    "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
)
DOMAIN_TYPE = "EIP712Domain(uint256 chainId,address verifyingContract)"

SAFE_TX_TYPEHASH = keccak(text=SAFE_TX_TYPE)
DOMAIN_SEPARATOR_TYPEHASH = keccak(text=DOMAIN_TYPE)

_SAFE_TX_ABI_TYPES = [
    "bytes32",
    "address",
    "uint256",
    "bytes32",
    "uint8",
    "uint256",
    "uint256",
    "uint256",
    "address",
    "address",
    "uint256",
]


def compute_domain_separator(chain_id: int, safe_address: str) -> bytes:
    """Domain separator for a Safe (v1.3+) deployed at safe_address on chain_id."""
    return keccak(
        abi_encode(
            ["bytes32", "uint256", "address"],
            [DOMAIN_SEPARATOR_TYPEHASH, int(chain_id), normalize_address(safe_address)],
        )
    )


def compute_safe_tx_struct_hash(tx: SafeTransaction) -> bytes:
    return keccak(
        abi_encode(
            _SAFE_TX_ABI_TYPES,
            [
                SAFE_TX_TYPEHASH,
                tx.to,
                tx.value,
                keccak(tx.data),
                int(tx.operation),
                tx.safe_tx_gas,
                tx.base_gas,
                tx.gas_price,
                tx.gas_token,
                tx.refund_receiver,
                tx.nonce,
            ],
        )
    )


def compute_commitment(domain_separator: bytes, tx: SafeTransaction) -> bytes:
    """Pure: same (domain, transaction) always yields the same 32-byte commitment."""
    if not isinstance(domain_separator, (bytes, bytearray)) or len(domain_separator) != 32:
        raise EncodingError("Domain separator must be exactly 32 bytes")
    return keccak(b"\x19\x01" + bytes(domain_separator) + compute_safe_tx_struct_hash(tx))


def commitment_hex(commitment: bytes) -> str:
    if len(commitment) != 32:
        raise EncodingError("Commitment must be exactly 32 bytes")
    return "0x" + bytes(commitment).hex()


def parse_commitment(value: str | bytes) -> bytes:
    """Accept a 0x-prefixed hex string or raw bytes; enforce 32 bytes."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as e:
            raise EncodingError(f"Commitment is not valid hex: {value!r}") from e
    if len(raw) != 32:
        raise EncodingError(f"Commitment must be 32 bytes, got {len(raw)}")
    return raw


def safe_typed_data(chain_id: int, safe_address: str, tx: SafeTransaction) -> dict[str, Any]:
    """Express the transaction as EIP-712 typed data (for wallets and cross-checks)."""
    return {
        "types": {
            "EIP712Domain": [
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "SafeTx": [
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "data", "type": "bytes"},
                {"name": "operation", "type": "uint8"},
                {"name": "safeTxGas", "type": "uint256"},
                {"name": "baseGas", "type": "uint256"},
                {"name": "gasPrice", "type": "uint256"},
                {"name": "gasToken", "type": "address"},
                {"name": "refundReceiver", "type": "address"},
                {"name": "nonce", "type": "uint256"},
            ],
        },
        "primaryType": "SafeTx",
        "domain": {
            "chainId": int(chain_id),
            "verifyingContract": normalize_address(safe_address),
        },
        "message": {
            "to": tx.to,
            "value": tx.value,
            "data": "0x" + tx.data.hex(),
            "operation": int(tx.operation),
            "safeTxGas": tx.safe_tx_gas,
            "baseGas": tx.base_gas,
            "gasPrice": tx.gas_price,
            "gasToken": tx.gas_token,
            "refundReceiver": tx.refund_receiver,
            "nonce": tx.nonce,
        },
    }
