"""
Treasury configuration.

Built once at process start from a ``.env`` file, the process environment
and explicit overrides (later sources win), then passed to every component.
Nothing else in the package reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values

from .errors import ConfigError, EncodingError
from .ledger import RetryPolicy
from .transaction import UINT16_MAX, ZERO_ADDRESS, normalize_address
from .units import require_uint96, to_wei


DEFAULT_HOME = Path.home() / ".agent-treasury"
DEFAULT_CHAIN_ID = 8453
DEFAULT_RPC_URL = "https://base-mainnet.public.blastapi.io"
DEFAULT_TX_SERVICE_URL = "https://safe-transaction-base.safe.global"
DEFAULT_ALLOWANCE_MODULE = "0xCFbFaC74C26F8647cBDb8c5caf80BB5b32E43134"
MOR_TOKEN = "0x7431aDa8a591C955a994a21710752EF9b882b8e3"
AUDIT_KEY_ENV = "AGENT_TREASURY_AUDIT_HMAC_KEY"

DEFAULTS = {
    "MOR_DAILY_ALLOWANCE": "50",
    "ETH_DAILY_ALLOWANCE": "0.05",
    "RESET_MINUTES": "1440",
    "MOR_LOW_THRESHOLD": "20",
    "MOR_REFILL_AMOUNT": "30",
    "ETH_LOW_THRESHOLD": "0.01",
    "ETH_REFILL_AMOUNT": "0.03",
    "SAFE_SETTLE_SECONDS": "5",
    "SAFE_READ_ATTEMPTS": "5",
    "SAFE_READ_BACKOFF": "2.0",
}


@dataclass(frozen=True)
class AssetConfig:
    """Allowance and refill settings for one asset (amounts in base units)."""

    symbol: str
    token: str
    allowance: int
    low_threshold: int
    refill_amount: int

    @property
    def is_native(self) -> bool:
        return self.token == ZERO_ADDRESS


@dataclass(frozen=True)
class TreasuryConfig:
    safe_address: str
    module_address: str = DEFAULT_ALLOWANCE_MODULE
    chain_id: int = DEFAULT_CHAIN_ID
    rpc_url: str = DEFAULT_RPC_URL
    tx_service_url: Optional[str] = DEFAULT_TX_SERVICE_URL
    key_ref: Optional[str] = None
    owner_address: Optional[str] = None
    keychain_db: Optional[str] = None
    keychain_pass_file: Optional[Path] = None
    reset_minutes: int = 1440
    assets: tuple[AssetConfig, ...] = field(default_factory=tuple)
    settle_seconds: float = 5.0
    read_attempts: int = 5
    read_backoff: float = 2.0
    home: Path = DEFAULT_HOME
    audit_hmac_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        try:
            object.__setattr__(self, "safe_address", normalize_address(self.safe_address))
            object.__setattr__(self, "module_address", normalize_address(self.module_address))
        except EncodingError as e:
            raise ConfigError(str(e)) from e
        if not 0 <= self.reset_minutes <= UINT16_MAX:
            raise ConfigError(f"RESET_MINUTES must fit in uint16, got {self.reset_minutes}")
        if self.read_attempts < 1:
            raise ConfigError("SAFE_READ_ATTEMPTS must be >= 1")
        if self.settle_seconds < 0 or self.read_backoff < 0:
            raise ConfigError("Delays must be >= 0")

    @property
    def proposals_dir(self) -> Path:
        return self.home / "proposals"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets" / "audit_hmac.key"

    def asset(self, symbol: str) -> AssetConfig:
        for asset in self.assets:
            if asset.symbol == symbol.upper():
                return asset
        known = ", ".join(a.symbol for a in self.assets)
        raise ConfigError(f"Unknown asset {symbol!r} (configured: {known})")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.read_attempts, backoff=self.read_backoff)


def parse_env_file(path: Path) -> dict[str, str]:
    """Read a dotenv file; bare keys without a value are dropped."""
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def load_config(
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Optional[str]]] = None,
    require_safe: bool = True,
) -> TreasuryConfig:
    """Resolve configuration: defaults < .env file < environment < overrides.

    With ``require_safe`` off a missing SAFE_ADDRESS resolves to the zero
    address, for commands that run before the account exists.
    """
    env = dict(os.environ if environ is None else environ)
    home = Path(env.get("AGENT_TREASURY_HOME") or DEFAULT_HOME).expanduser()

    merged: dict[str, str] = dict(DEFAULTS)
    path = env_file if env_file is not None else home / ".env"
    if path.exists():
        merged.update(parse_env_file(path))
    elif env_file is not None:
        raise ConfigError(f"Env file not found: {env_file}")
    merged.update({k: v for k, v in env.items() if v != ""})
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    safe_address = merged.get("SAFE_ADDRESS") or (None if require_safe else ZERO_ADDRESS)
    if not safe_address:
        raise ConfigError(f"SAFE_ADDRESS is not set (environment or {path})")

    def _amount(name: str) -> int:
        try:
            return require_uint96(to_wei(merged[name]), name)
        except EncodingError as e:
            raise ConfigError(f"{name}: {e}") from e

    def _address(name: str, default: str) -> str:
        try:
            return normalize_address(merged.get(name) or default)
        except EncodingError as e:
            raise ConfigError(f"{name}: {e}") from e

    def _number(name: str, kind):
        try:
            return kind(merged[name])
        except ValueError as e:
            raise ConfigError(f"{name} must be a number, got {merged[name]!r}") from e

    assets = (
        AssetConfig(
            symbol="MOR",
            token=_address("MOR_TOKEN", MOR_TOKEN),
            allowance=_amount("MOR_DAILY_ALLOWANCE"),
            low_threshold=_amount("MOR_LOW_THRESHOLD"),
            refill_amount=_amount("MOR_REFILL_AMOUNT"),
        ),
        AssetConfig(
            symbol="ETH",
            token=ZERO_ADDRESS,
            allowance=_amount("ETH_DAILY_ALLOWANCE"),
            low_threshold=_amount("ETH_LOW_THRESHOLD"),
            refill_amount=_amount("ETH_REFILL_AMOUNT"),
        ),
    )
    pass_file = merged.get("SAFE_KEYCHAIN_PASS_FILE")

    return TreasuryConfig(
        safe_address=safe_address,
        module_address=merged.get("ALLOWANCE_MODULE") or DEFAULT_ALLOWANCE_MODULE,
        chain_id=_number("SAFE_CHAIN_ID", int) if merged.get("SAFE_CHAIN_ID") else DEFAULT_CHAIN_ID,
        rpc_url=merged.get("SAFE_RPC") or DEFAULT_RPC_URL,
        tx_service_url=merged.get("SAFE_TX_SERVICE") or DEFAULT_TX_SERVICE_URL,
        key_ref=merged.get("SAFE_KEY_REF") or None,
        owner_address=merged.get("SAFE_OWNER") or None,
        keychain_db=merged.get("SAFE_KEYCHAIN_DB") or None,
        keychain_pass_file=Path(pass_file).expanduser() if pass_file else None,
        reset_minutes=_number("RESET_MINUTES", int),
        assets=assets,
        settle_seconds=_number("SAFE_SETTLE_SECONDS", float),
        read_attempts=_number("SAFE_READ_ATTEMPTS", int),
        read_backoff=_number("SAFE_READ_BACKOFF", float),
        home=home,
        audit_hmac_key=merged.get(AUDIT_KEY_ENV) or None,
    )
