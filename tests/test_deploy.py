"""Tests for Safe deployment planning and the simulated proxy factory."""

import pytest
from eth_abi import decode as abi_decode
from eth_utils import function_signature_to_4byte_selector

from agent_treasury.audit import AuditTrail, EventType
from agent_treasury.deploy import (
    COMPATIBILITY_FALLBACK_HANDLER,
    SAFE_PROXY_FACTORY,
    SETUP_SIGNATURE,
    SETUP_TYPES,
    deploy_safe,
    plan_deployment,
    proxy_from_receipt,
    verify_deployment,
)
from agent_treasury.errors import DeploymentError, EncodingError, StepRejected
from agent_treasury.ledger import Receipt
from agent_treasury.local_ledger import LocalSafeFactory
from agent_treasury.sequencer import ExecutionSequencer
from agent_treasury.transaction import ZERO_ADDRESS, normalize_address
from agent_treasury.units import to_wei

from conftest import MODULE, make_config

HUMAN = normalize_address("0x" + "f0" * 20)
LOW_HUMAN = normalize_address("0x" + "01" * 20)


@pytest.fixture
def factory(owner_a, clock):
    factory = LocalSafeFactory(sender=owner_a.address, clock=clock)
    factory.fund(owner_a.address, to_wei("0.01"))
    return factory


class TestPlan:
    def test_owners_sorted_and_checksummed(self, owner_a):
        plan = plan_deployment([HUMAN, owner_a.address.lower()], 1, salt_nonce=7)
        assert list(plan.owners) == sorted([HUMAN, owner_a.address], key=str.lower)
        assert owner_a.address in plan.owners
        assert plan.salt_nonce == 7

    @pytest.mark.parametrize("threshold", [0, 3])
    def test_threshold_must_fit_owner_count(self, owner_a, threshold):
        with pytest.raises(EncodingError, match="Threshold must be between 1 and 2"):
            plan_deployment([HUMAN, owner_a.address], threshold)

    def test_duplicate_owner(self):
        with pytest.raises(EncodingError, match="distinct"):
            plan_deployment([HUMAN, HUMAN.upper().replace("0X", "0x")], 1)

    def test_salt_defaults_to_random(self, owner_a):
        first = plan_deployment([HUMAN, owner_a.address], 1)
        second = plan_deployment([HUMAN, owner_a.address], 1)
        assert first.salt_nonce != second.salt_nonce

    def test_salt_must_fit_uint256(self, owner_a):
        with pytest.raises(EncodingError, match="uint256"):
            plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=2**256)

    def test_initializer_is_setup_call(self, owner_a):
        plan = plan_deployment([HUMAN, owner_a.address], 2, salt_nonce=1)
        data = plan.initializer()
        assert data[:4] == function_signature_to_4byte_selector(SETUP_SIGNATURE)

        owners, threshold, to, payload, handler, payment_token, payment, receiver = abi_decode(
            SETUP_TYPES, data[4:]
        )
        assert [o.lower() for o in owners] == [o.lower() for o in plan.owners]
        assert threshold == 2
        assert (to, payload, payment_token, payment, receiver) == (ZERO_ADDRESS, b"", ZERO_ADDRESS, 0, ZERO_ADDRESS)
        assert handler.lower() == COMPATIBILITY_FALLBACK_HANDLER.lower()


class TestDeploy:
    def test_deploys_one_of_two_account(self, factory, owner_a, tmp_path):
        plan = plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=42)
        audit = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "audit.key", key="k")

        result = deploy_safe(factory, plan, audit=audit)

        assert not result.dry_run
        chain = factory.chains[result.safe_address]
        assert sorted(chain.owners, key=str.lower) == list(plan.owners)
        assert chain.threshold == 1
        verify_deployment(chain.ledger(), plan)

        events = audit.read_events(event_type=EventType.SAFE_DEPLOYED)
        assert [(e.safe, e.tx_hash) for e in events] == [(result.safe_address, result.tx_hash)]

    def test_deployed_account_accepts_setup(self, factory, owner_a, tmp_path):
        plan = plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=42)
        safe = deploy_safe(factory, plan).safe_address
        chain = factory.chains[safe]

        config = make_config(tmp_path / "home", safe_address=safe)
        report = ExecutionSequencer(chain.ledger(owner_a.address), owner_a, config).run()

        assert report.writes == 4
        assert chain.delegates[MODULE] == [owner_a.address]

    def test_address_depends_on_salt(self, factory, owner_a):
        first = deploy_safe(factory, plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=1))
        second = deploy_safe(factory, plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=2))
        assert first.safe_address != second.safe_address
        assert len(factory.chains) == 2

    def test_reused_salt_reverts(self, factory, owner_a):
        plan = plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=5)
        deploy_safe(factory, plan)
        with pytest.raises(StepRejected, match="Create2 call failed"):
            deploy_safe(factory, plan)
        assert len(factory.chains) == 1

    def test_dry_run_sends_nothing(self, factory, owner_a):
        result = deploy_safe(factory, plan_deployment([HUMAN, owner_a.address], 1), dry_run=True)
        assert result.dry_run
        assert result.to_dict()["initializer"].startswith("0x")
        assert factory.tx_count == 0
        assert factory.chains == {}

    def test_payer_without_gas_refused(self, owner_b):
        factory = LocalSafeFactory(sender=owner_b.address)
        with pytest.raises(DeploymentError, match="no native balance"):
            deploy_safe(factory, plan_deployment([HUMAN, owner_b.address], 1), dry_run=True)
        assert factory.tx_count == 0

    def test_verify_catches_wrong_threshold(self, factory, owner_a):
        plan = plan_deployment([HUMAN, owner_a.address], 1, salt_nonce=9)
        chain = factory.chains[deploy_safe(factory, plan).safe_address]
        chain.threshold = 2
        with pytest.raises(DeploymentError, match="Threshold on chain is 2"):
            verify_deployment(chain.ledger(), plan)

    def test_verify_catches_different_owners(self, factory, owner_a):
        chain = factory.chains[deploy_safe(factory, plan_deployment([HUMAN, owner_a.address], 1)).safe_address]
        other = plan_deployment([LOW_HUMAN, owner_a.address], 1)
        with pytest.raises(DeploymentError, match="Owners on chain"):
            verify_deployment(chain.ledger(), other)


class TestProxyFromReceipt:
    def test_reads_proxy_topic(self):
        proxy = "0x" + "ab" * 20
        receipt = Receipt(
            tx_hash="0x01",
            success=True,
            logs=(
                (SAFE_PROXY_FACTORY, ("0x" + "00" * 32,)),
                (SAFE_PROXY_FACTORY, (
                    "0x4f51faf6c4561ff95f067657e43439f0f856d97c04d9ec9070a6199ad418e235",
                    "0x" + "00" * 12 + "ab" * 20,
                )),
            ),
        )
        assert proxy_from_receipt(receipt).lower() == proxy

    def test_event_from_other_contract_ignored(self):
        topics = (
            "0x4f51faf6c4561ff95f067657e43439f0f856d97c04d9ec9070a6199ad418e235",
            "0x" + "00" * 12 + "ab" * 20,
        )
        receipt = Receipt(tx_hash="0x02", success=True, logs=(("0x" + "11" * 20, topics),))
        with pytest.raises(DeploymentError, match="No ProxyCreation event"):
            proxy_from_receipt(receipt)
