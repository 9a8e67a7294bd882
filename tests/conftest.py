"""Shared fixtures: a simulated account with the allowance module and fast config."""

import pytest
from eth_account import Account

from agent_treasury.config import DEFAULT_ALLOWANCE_MODULE, MOR_TOKEN, AssetConfig, TreasuryConfig
from agent_treasury.keys import LocalKeySigner
from agent_treasury.local_ledger import LocalChain
from agent_treasury.transaction import ZERO_ADDRESS, normalize_address
from agent_treasury.units import to_wei

SAFE = normalize_address("0x" + "5a" * 20)
MODULE = DEFAULT_ALLOWANCE_MODULE
START_MINUTE = 29_000_000


class FakeClock:
    """Minute clock the tests move by hand."""

    def __init__(self, now: int = START_MINUTE):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += minutes


def make_signer() -> LocalKeySigner:
    return LocalKeySigner(Account.create())


def make_config(home, **overrides) -> TreasuryConfig:
    assets = (
        AssetConfig(
            symbol="MOR",
            token=MOR_TOKEN,
            allowance=to_wei("50"),
            low_threshold=to_wei("20"),
            refill_amount=to_wei("30"),
        ),
        AssetConfig(
            symbol="ETH",
            token=ZERO_ADDRESS,
            allowance=to_wei("0.05"),
            low_threshold=to_wei("0.01"),
            refill_amount=to_wei("0.03"),
        ),
    )
    values = dict(
        safe_address=SAFE,
        module_address=MODULE,
        tx_service_url=None,
        reset_minutes=1440,
        assets=assets,
        settle_seconds=0,
        read_attempts=3,
        read_backoff=0,
        home=home,
        audit_hmac_key="test-audit-key",
    )
    values.update(overrides)
    return TreasuryConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def owner_a():
    return make_signer()


@pytest.fixture
def owner_b():
    return make_signer()


@pytest.fixture
def outsider():
    return make_signer()


@pytest.fixture
def chain(owner_a, owner_b, clock):
    """1-of-2 account funded with 100 MOR and 1 ETH."""
    chain = LocalChain(
        safe_address=SAFE,
        owners=[owner_a.address, owner_b.address],
        threshold=1,
        clock=clock,
    )
    chain.fund(SAFE, to_wei("100"), MOR_TOKEN)
    chain.fund(SAFE, to_wei("1"))
    return chain


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path / "home")

