"""Tests for the read-only treasury status view."""

import json

from agent_treasury.aggregator import InMemoryProposalStore, SignatureAggregator
from agent_treasury.config import MOR_TOKEN
from agent_treasury.errors import LedgerError
from agent_treasury.local_ledger import LocalLedger
from agent_treasury.proposals import ProposalService
from agent_treasury.reconciler import reconcile
from agent_treasury.refill import RefillService
from agent_treasury.sequencer import ExecutionSequencer
from agent_treasury.units import to_wei

from conftest import MODULE

RECIPIENT = "0x" + "77" * 20


class _DelegatesDown(LocalLedger):
    def get_delegates(self, module, start=0, page_size=50):
        raise LedgerError("rpc timeout")


def test_fresh_account(chain, config, clock):
    status = reconcile(chain.ledger(), config, [], clock())
    assert status.threshold == 1
    assert status.nonce == 0
    assert not status.module_enabled
    assert status.allowances == []
    assert status.safe_balances == {"MOR": to_wei("100"), "ETH": to_wei("1")}


def test_configured_account_with_pending_proposal(chain, owner_a, owner_b, config, clock):
    ExecutionSequencer(chain.ledger(owner_a.address), owner_a, config).run()
    RefillService(chain.ledger(owner_a.address), config, clock=clock).pull(config.asset("MOR"), to_wei("30"))
    chain.threshold = 2
    aggregator = SignatureAggregator(InMemoryProposalStore())
    ProposalService(chain.ledger(owner_a.address), owner_a, aggregator, config).transfer("ETH", RECIPIENT, 1)
    clock.advance(60)

    status = reconcile(chain.ledger(), config, aggregator.pending(), clock())

    assert status.module_enabled
    assert status.delegate_balances[owner_a.address]["MOR"] == to_wei("30")
    mor = next(a for a in status.allowances if a.symbol == "MOR")
    assert mor.delegate == owner_a.address
    assert mor.remaining == to_wei("20")
    assert not mor.reset_due
    assert mor.next_reset_min == clock.now - 60 + 1440

    (pending,) = status.proposals
    assert pending.confirmations == 1
    assert pending.required == 2
    assert not pending.executable
    assert pending.missing_owners == [owner_b.address]

    payload = json.loads(json.dumps(status.to_dict()))
    assert payload["safe"]["allowanceModuleEnabled"] is True
    assert payload["allowances"][0]["limit"] == "50"
    assert payload["pendingTransactions"][0]["confirmationsRequired"] == 2


def test_reset_due_shows_full_allowance(chain, owner_a, config, clock):
    ExecutionSequencer(chain.ledger(owner_a.address), owner_a, config).run()
    RefillService(chain.ledger(owner_a.address), config, clock=clock).pull(config.asset("MOR"), to_wei("50"))
    clock.advance(1500)

    status = reconcile(chain.ledger(), config, [], clock())
    mor = next(a for a in status.allowances if a.symbol == "MOR")
    assert mor.reset_due
    assert mor.remaining == to_wei("50")
    assert chain.allowances[(MODULE, owner_a.address, MOR_TOKEN)][1] == to_wei("50")


def test_stale_proposals_are_hidden(chain, owner_a, config, clock):
    aggregator = SignatureAggregator(InMemoryProposalStore())
    ProposalService(chain.ledger(owner_a.address), owner_a, aggregator, config).transfer("ETH", RECIPIENT, 1)
    chain.nonce = 1
    assert reconcile(chain.ledger(), config, aggregator.pending(), clock()).proposals == []


def test_delegate_read_failure_is_reported(chain, owner_a, config, clock):
    ExecutionSequencer(chain.ledger(owner_a.address), owner_a, config).run()
    status = reconcile(_DelegatesDown(chain), config, [], clock())
    assert status.module_enabled
    assert status.allowances == []
    assert status.errors == ["delegates: rpc timeout"]
