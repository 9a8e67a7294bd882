"""
Client for the Safe Transaction Service, the off-chain relay co-signers share.

Everything read from the relay is untrusted: proposals are handed to the
aggregator, which re-hashes the transaction and re-verifies every signature
before merging anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .digest import commitment_hex, parse_commitment
from .errors import EncodingError, RelayError
from .transaction import SafeTransaction, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class RelayProposal:
    """A pending multisig transaction as reported by the relay."""

    commitment: str
    transaction: SafeTransaction
    confirmations: list[tuple[str, bytes]] = field(default_factory=list)
    confirmations_required: int = 0

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> RelayProposal:
        confirmations = []
        for c in item.get("confirmations") or []:
            sig = c.get("signature")
            if not sig:
                continue
            confirmations.append((c["owner"], bytes.fromhex(sig[2:] if sig.startswith("0x") else sig)))
        return cls(
            commitment=commitment_hex(parse_commitment(item["safeTxHash"])),
            transaction=SafeTransaction.from_dict(item),
            confirmations=confirmations,
            confirmations_required=int(item.get("confirmationsRequired") or 0),
        )


class SafeTransactionServiceClient:
    """Thin httpx wrapper over the multisig-transaction endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> SafeTransactionServiceClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def propose(
        self,
        safe: str,
        tx: SafeTransaction,
        commitment: bytes,
        signature: bytes,
        sender: str,
    ) -> int:
        body = {
            **tx.to_dict(),
            "contractTransactionHash": commitment_hex(commitment),
            "sender": normalize_address(sender),
            "signature": "0x" + bytes(signature).hex(),
        }
        response = self._request(
            "POST", f"/api/v1/safes/{normalize_address(safe)}/multisig-transactions/", json=body
        )
        logger.info("Proposal %s submitted to relay (%d)", body["contractTransactionHash"], response.status_code)
        return response.status_code

    def confirm(self, commitment: bytes | str, signature: bytes) -> int:
        key = commitment_hex(parse_commitment(commitment))
        response = self._request(
            "POST",
            f"/api/v1/multisig-transactions/{key}/confirmations/",
            json={"signature": "0x" + bytes(signature).hex()},
        )
        logger.info("Confirmation for %s submitted to relay (%d)", key, response.status_code)
        return response.status_code

    def pending(self, safe: str, limit: int = 10) -> list[RelayProposal]:
        response = self._request(
            "GET",
            f"/api/v1/safes/{normalize_address(safe)}/multisig-transactions/",
            params={"executed": "false", "limit": limit},
        )
        proposals = []
        for item in response.json().get("results") or []:
            try:
                proposals.append(RelayProposal.from_api(item))
            except (EncodingError, KeyError, ValueError) as e:
                logger.warning("Skipping malformed relay entry %s: %s", item.get("safeTxHash"), e)
        return proposals

    def get(self, commitment: bytes | str) -> RelayProposal:
        key = commitment_hex(parse_commitment(commitment))
        response = self._request("GET", f"/api/v1/multisig-transactions/{key}/")
        try:
            return RelayProposal.from_api(response.json())
        except (EncodingError, KeyError, ValueError) as e:
            raise RelayError(response.status_code, f"malformed transaction {key}: {e}") from e

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RelayError(0, f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise RelayError(response.status_code, response.text)
        return response
