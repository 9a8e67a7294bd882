"""
New Safe accounts through the canonical v1.4.1 proxy factory.

A deployment is planned first: owners are normalized and sorted, the
threshold is checked against the owner count and a salt nonce is fixed.
The plan encodes the ``setup`` initializer handed to
``createProxyWithNonce``; the new account's address is read back from the
factory's ``ProxyCreation`` event and its owners and threshold are checked
against the plan before anything else uses it.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from .audit import AuditTrail, EventType
from .errors import DeploymentError, EncodingError, StepRejected
from .ledger import Ledger, Receipt, RetryPolicy
from .transaction import UINT256_MAX, ZERO_ADDRESS, encode_call, normalize_address

logger = logging.getLogger(__name__)


SAFE_PROXY_FACTORY = "0x4e1DCf7AD4e460CfD30791CCC4F9c8a4f820ec67"
SAFE_L2_SINGLETON = "0x29fcB43b46531BcA003ddC8FCB67FFE91900C762"
COMPATIBILITY_FALLBACK_HANDLER = "0xfd0732Dc9E303f09fCEf3a7388Ad10A83459Ec99"

# keccak256("ProxyCreation(address,address)"); topics[1] is the new proxy
PROXY_CREATION_TOPIC = "0x4f51faf6c4561ff95f067657e43439f0f856d97c04d9ec9070a6199ad418e235"

SETUP_SIGNATURE = "setup(address[],uint256,address,bytes,address,address,uint256,address)"
SETUP_TYPES = ["address[]", "uint256", "address", "bytes", "address", "address", "uint256", "address"]


class SafeFactory(Protocol):
    factory_address: str

    @property
    def sender_address(self) -> Optional[str]: ...

    def get_balance(self, address: str) -> int: ...

    def create_proxy(self, singleton: str, initializer: bytes, salt_nonce: int) -> Receipt: ...


@dataclass(frozen=True)
class SafeDeployment:
    owners: tuple[str, ...]
    threshold: int
    salt_nonce: int
    singleton: str = SAFE_L2_SINGLETON
    fallback_handler: str = COMPATIBILITY_FALLBACK_HANDLER

    def initializer(self) -> bytes:
        """ABI-encoded ``setup`` call: no delegate call, no payment."""
        return encode_call(
            SETUP_SIGNATURE,
            SETUP_TYPES,
            [
                list(self.owners),
                self.threshold,
                ZERO_ADDRESS,
                b"",
                self.fallback_handler,
                ZERO_ADDRESS,
                0,
                ZERO_ADDRESS,
            ],
        )

    def to_dict(self) -> dict:
        return {
            "owners": list(self.owners),
            "threshold": self.threshold,
            "salt_nonce": str(self.salt_nonce),
            "singleton": self.singleton,
            "fallback_handler": self.fallback_handler,
            "initializer": "0x" + self.initializer().hex(),
        }


@dataclass(frozen=True)
class DeploymentResult:
    deployment: SafeDeployment
    safe_address: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.safe_address is None

    def to_dict(self) -> dict:
        return {
            "safe_address": self.safe_address,
            "tx_hash": self.tx_hash,
            "dry_run": self.dry_run,
            **self.deployment.to_dict(),
        }


def plan_deployment(
    owners: Iterable[str], threshold: int, salt_nonce: Optional[int] = None
) -> SafeDeployment:
    normalized = [normalize_address(o) for o in owners]
    if not normalized:
        raise EncodingError("A Safe needs at least one owner")
    if len(set(normalized)) != len(normalized):
        raise EncodingError("Owners must be distinct")
    if not 1 <= threshold <= len(normalized):
        raise EncodingError(f"Threshold must be between 1 and {len(normalized)}, got {threshold}")
    if salt_nonce is None:
        salt_nonce = secrets.randbits(256)
    elif not 0 <= salt_nonce <= UINT256_MAX:
        raise EncodingError(f"Salt nonce must fit in uint256, got {salt_nonce}")
    return SafeDeployment(
        owners=tuple(sorted(normalized, key=str.lower)),
        threshold=threshold,
        salt_nonce=salt_nonce,
    )


def proxy_from_receipt(receipt: Receipt, factory: str = SAFE_PROXY_FACTORY) -> str:
    """Address of the proxy announced by the factory in ``receipt``."""
    emitter = normalize_address(factory).lower()
    for address, topics in receipt.logs:
        if address.lower() == emitter and len(topics) > 1 and topics[0].lower() == PROXY_CREATION_TOPIC:
            return normalize_address("0x" + topics[1][-40:])
    raise DeploymentError(f"No ProxyCreation event in {receipt.tx_hash}")


def deploy_safe(
    factory: SafeFactory,
    deployment: SafeDeployment,
    payer: Optional[str] = None,
    dry_run: bool = False,
    audit: Optional[AuditTrail] = None,
) -> DeploymentResult:
    payer = payer or factory.sender_address
    if payer is None:
        raise ValueError("Deployment needs the paying account")
    if factory.get_balance(payer) == 0:
        raise DeploymentError(f"{normalize_address(payer)} has no native balance to pay for gas")
    if dry_run:
        return DeploymentResult(deployment)

    receipt = factory.create_proxy(deployment.singleton, deployment.initializer(), deployment.salt_nonce)
    if not receipt.success:
        if audit:
            audit.log(
                EventType.SAFE_DEPLOYED,
                signer=payer,
                tx_hash=receipt.tx_hash,
                success=False,
                reason=receipt.reason,
            )
        raise StepRejected("createProxyWithNonce", receipt.tx_hash, receipt.reason or "reverted")

    safe = proxy_from_receipt(receipt, factory.factory_address)
    logger.info("Safe deployed at %s (tx %s)", safe, receipt.tx_hash)
    if audit:
        audit.log(
            EventType.SAFE_DEPLOYED,
            safe=safe,
            signer=payer,
            tx_hash=receipt.tx_hash,
            details={"owners": list(deployment.owners), "threshold": deployment.threshold},
        )
    return DeploymentResult(deployment, safe_address=safe, tx_hash=receipt.tx_hash)


def verify_deployment(
    ledger: Ledger, deployment: SafeDeployment, retry: Optional[RetryPolicy] = None
) -> None:
    """Raise DeploymentError unless the account has exactly the planned owners and threshold.

    An empty owner list means the read path has not seen the proxy yet and is
    re-read under ``retry``.
    """
    retry = retry or RetryPolicy(max_attempts=1)
    owners = sorted(retry.read_until("getOwners", ledger.get_owners, bool), key=str.lower)
    if owners != list(deployment.owners):
        raise DeploymentError(f"Owners on chain {owners} differ from planned {list(deployment.owners)}")
    threshold = ledger.get_threshold()
    if threshold != deployment.threshold:
        raise DeploymentError(f"Threshold on chain is {threshold}, planned {deployment.threshold}")
