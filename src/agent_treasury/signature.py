"""
Signature codec for Safe owner signatures.

Signatures are 65 bytes, r || s || v. The verifier distinguishes two kinds by v:

* v in {27, 28}: ECDSA over the commitment itself (EIP-712 wallets).
* v in {31, 32}: the signer produced an eth_sign signature, i.e. over
  "\\x19Ethereum Signed Message:\\n32" || commitment, and v was offset by 4.

Commitments signed by this engine always go out in the offset encoding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from .errors import EncodingError
from .keys import KeySigner
from .transaction import normalize_address


SIGNATURE_LENGTH = 65
OFFSET = 4
_RAW_V = (27, 28)
_OFFSET_V = (27 + OFFSET, 28 + OFFSET)


@dataclass(frozen=True)
class SignatureParts:
    r: int
    s: int
    v: int

    @property
    def is_offset(self) -> bool:
        return self.v in _OFFSET_V


def split_signature(signature: bytes) -> SignatureParts:
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_LENGTH:
        length = len(signature) if isinstance(signature, (bytes, bytearray)) else "non-bytes"
        raise EncodingError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {length}")
    return SignatureParts(
        r=int.from_bytes(signature[0:32], "big"),
        s=int.from_bytes(signature[32:64], "big"),
        v=signature[64],
    )


def to_offset_encoding(raw_signature: bytes) -> bytes:
    """Mark a raw eth_sign signature for the verifier by adding 4 to v."""
    parts = split_signature(raw_signature)
    if parts.v not in _RAW_V:
        raise EncodingError(f"Expected raw signature with v in 27/28, got v={parts.v}")
    return bytes(raw_signature[:64]) + bytes([parts.v + OFFSET])


def from_offset_encoding(signature: bytes) -> bytes:
    parts = split_signature(signature)
    if not parts.is_offset:
        raise EncodingError(f"Expected offset signature with v in 31/32, got v={parts.v}")
    return bytes(signature[:64]) + bytes([parts.v - OFFSET])


def sign_commitment(signer: KeySigner, commitment: bytes) -> bytes:
    """Ask the key-custody signer for a signature over commitment and return its offset encoding."""
    if not isinstance(commitment, (bytes, bytearray)) or len(commitment) != 32:
        raise EncodingError("Only 32-byte commitments may be signed")
    return to_offset_encoding(signer.sign_digest(bytes(commitment)))


def recover_signer(commitment: bytes, signature: bytes) -> str:
    """Recover the owner address under the verifier's rules for this signature's v."""
    if len(commitment) != 32:
        raise EncodingError("Commitment must be exactly 32 bytes")
    parts = split_signature(signature)
    try:
        if parts.is_offset:
            return Account.recover_message(
                encode_defunct(primitive=bytes(commitment)),
                vrs=(parts.v - OFFSET, parts.r, parts.s),
            )
        if parts.v in _RAW_V:
            sig = keys.Signature(vrs=(parts.v - 27, parts.r, parts.s))
            return sig.recover_public_key_from_msg_hash(bytes(commitment)).to_checksum_address()
    except (BadSignature, ValidationError, ValueError) as e:
        raise EncodingError(f"Signature does not recover: {e}") from e
    raise EncodingError(f"Unsupported signature type v={parts.v}")


def verify_signature(commitment: bytes, signer: str, signature: bytes) -> bool:
    try:
        return recover_signer(commitment, signature) == normalize_address(signer)
    except EncodingError:
        return False


def pack_signatures(pairs: Iterable[tuple[str, bytes]]) -> bytes:
    """Concatenate signatures ordered by ascending owner address, as the verifier requires."""
    ordered = sorted(
        ((normalize_address(owner), bytes(sig)) for owner, sig in pairs),
        key=lambda item: int(item[0], 16),
    )
    for _, sig in ordered:
        split_signature(sig)
    return b"".join(sig for _, sig in ordered)
