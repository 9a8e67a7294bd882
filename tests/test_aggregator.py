"""Tests for signature aggregation and proposal storage."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from agent_treasury.aggregator import FileProposalStore, InMemoryProposalStore, SignatureAggregator
from agent_treasury.digest import commitment_hex, compute_commitment, compute_domain_separator
from agent_treasury.errors import EncodingError, UnknownCommitment
from agent_treasury.signature import SIGNATURE_LENGTH, recover_signer, sign_commitment
from agent_treasury.transaction import Operation, SafeTransaction

from conftest import SAFE, make_signer

DOMAIN = compute_domain_separator(8453, SAFE)


def _proposal(nonce=0, value=1):
    tx = SafeTransaction(to="0x" + "12" * 20, value=value, data=b"", operation=Operation.CALL, nonce=nonce)
    return tx, compute_commitment(DOMAIN, tx)


@pytest.fixture
def aggregator():
    return SignatureAggregator(InMemoryProposalStore(), domain_separator=DOMAIN)


class TestCollection:
    def test_signature_count_grows_until_threshold(self, aggregator):
        owners = [make_signer() for _ in range(3)]
        tx, commitment = _proposal()

        state = aggregator.open_proposal(tx, commitment, owners[0].address, sign_commitment(owners[0], commitment))
        assert len(state.signers) == 1
        assert not aggregator.state(commitment, 2).executable

        aggregator.add_signature(commitment, owners[1].address, sign_commitment(owners[1], commitment))
        assert aggregator.state(commitment, 2).executable
        assert not aggregator.state(commitment, 3).executable

        aggregator.add_signature(commitment, owners[2].address, sign_commitment(owners[2], commitment))
        assert aggregator.state(commitment, 3).executable

    def test_same_signer_replaces_instead_of_counting_twice(self, aggregator):
        owner = make_signer()
        tx, commitment = _proposal()
        sig = sign_commitment(owner, commitment)
        aggregator.open_proposal(tx, commitment, owner.address, sig)
        state = aggregator.add_signature(commitment, owner.address, sig)
        assert state.signers == [owner.address]
        assert not aggregator.state(commitment, 2).executable

    def test_only_current_owners_count_toward_threshold(self, aggregator):
        owner, stranger, other_owner = make_signer(), make_signer(), make_signer()
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))
        aggregator.add_signature(commitment, stranger.address, sign_commitment(stranger, commitment))

        owners = [owner.address, other_owner.address]
        state = aggregator.state(commitment, 2, owners)
        assert state.signers == [owner.address]
        assert state.missing == 1
        assert not state.executable
        assert not aggregator.is_executable(aggregator.get(commitment), 2, owners)
        assert aggregator.missing_signers(aggregator.get(commitment), owners) == [other_owner.address]

    def test_verdict_uses_threshold_given_not_stored_hint(self, aggregator):
        owner = make_signer()
        tx, commitment = _proposal()
        proposal = aggregator.open_proposal(
            tx, commitment, owner.address, sign_commitment(owner, commitment), threshold_hint=1
        )
        assert proposal.threshold_hint == 1
        assert not aggregator.state(commitment, 2).executable

    def test_zero_threshold_is_never_executable(self, aggregator):
        owner = make_signer()
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))
        assert not aggregator.state(commitment, 0).executable

    def test_unknown_commitment(self, aggregator):
        owner = make_signer()
        _, commitment = _proposal()
        with pytest.raises(UnknownCommitment):
            aggregator.add_signature(commitment, owner.address, sign_commitment(owner, commitment))
        with pytest.raises(UnknownCommitment):
            aggregator.get(commitment)

    def test_signature_must_recover_to_claimed_signer(self, aggregator):
        owner, impostor = make_signer(), make_signer()
        tx, commitment = _proposal()
        with pytest.raises(EncodingError):
            aggregator.open_proposal(tx, commitment, impostor.address, sign_commitment(owner, commitment))

    def test_transaction_must_hash_to_commitment(self, aggregator):
        owner = make_signer()
        tx, _ = _proposal(value=1)
        _, other = _proposal(value=2)
        with pytest.raises(EncodingError):
            aggregator.open_proposal(tx, other, owner.address, sign_commitment(owner, other))

    def test_packed_signatures_sorted(self, aggregator):
        owners = [make_signer() for _ in range(3)]
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, owners[0].address, sign_commitment(owners[0], commitment))
        for o in owners[1:]:
            aggregator.add_signature(commitment, o.address, sign_commitment(o, commitment))

        packed = aggregator.packed_signatures(commitment)
        recovered = [
            recover_signer(commitment, packed[i * SIGNATURE_LENGTH:(i + 1) * SIGNATURE_LENGTH])
            for i in range(3)
        ]
        assert recovered == sorted(recovered, key=lambda a: int(a, 16))

    def test_missing_signers(self, aggregator):
        owners = [make_signer() for _ in range(3)]
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, owners[1].address, sign_commitment(owners[1], commitment))
        proposal = aggregator.get(commitment)
        missing = aggregator.missing_signers(proposal, [o.address for o in owners])
        assert missing == [owners[0].address, owners[2].address]


class TestRelayIngest:
    def test_forged_signatures_are_dropped(self, aggregator):
        honest, forger, victim = make_signer(), make_signer(), make_signer()
        tx, commitment = _proposal()
        state = aggregator.ingest(
            tx,
            commitment,
            [
                (honest.address, sign_commitment(honest, commitment)),
                (victim.address, sign_commitment(forger, commitment)),
                (victim.address, b"\x00" * 65),
            ],
            threshold_hint=2,
        )
        assert state.signers == [honest.address]
        assert not aggregator.state(commitment, 2).executable

    def test_nothing_verifiable_is_ignored(self, aggregator):
        forger, victim = make_signer(), make_signer()
        tx, commitment = _proposal()
        assert aggregator.ingest(tx, commitment, [(victim.address, sign_commitment(forger, commitment))]) is None
        assert aggregator.pending() == []

    def test_mismatched_transaction_is_ignored(self, aggregator):
        owner = make_signer()
        tx, _ = _proposal(value=1)
        _, other = _proposal(value=2)
        assert aggregator.ingest(tx, other, [(owner.address, sign_commitment(owner, other))]) is None

    def test_merge_keeps_local_signatures(self, aggregator):
        a, b = make_signer(), make_signer()
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, a.address, sign_commitment(a, commitment))
        state = aggregator.ingest(tx, commitment, [(b.address, sign_commitment(b, commitment))], threshold_hint=2)
        assert set(state.signers) == {a.address, b.address}
        assert aggregator.state(commitment, 2).executable


class TestLifecycle:
    def test_prune_drops_superseded_nonces(self, aggregator):
        owner = make_signer()
        for nonce in (0, 0, 1, 2):
            tx, commitment = _proposal(nonce=nonce, value=nonce * 10 + len(aggregator.pending()))
            aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))

        assert aggregator.prune(1) == 2
        assert [p.nonce for p in aggregator.pending()] == [1, 2]

    def test_pending_filters_by_nonce(self, aggregator):
        owner = make_signer()
        for nonce in (3, 4):
            tx, commitment = _proposal(nonce=nonce)
            aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))
        assert [p.nonce for p in aggregator.pending(nonce=4)] == [4]

    def test_discard(self, aggregator):
        owner = make_signer()
        tx, commitment = _proposal()
        aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))
        assert aggregator.discard(commitment)
        assert not aggregator.discard(commitment)


class TestFileProposalStore:
    def test_persists_across_instances(self, tmp_path):
        owner = make_signer()
        tx, commitment = _proposal()
        SignatureAggregator(FileProposalStore(tmp_path)).open_proposal(
            tx, commitment, owner.address, sign_commitment(owner, commitment)
        )

        reloaded = SignatureAggregator(FileProposalStore(tmp_path)).get(commitment)
        assert reloaded.transaction == tx
        assert reloaded.signers == [owner.address]
        assert (tmp_path / f"{commitment.hex()}.json").exists()

    def test_concurrent_signatures_all_land(self, tmp_path):
        owners = [make_signer() for _ in range(6)]
        tx, commitment = _proposal()
        aggregator = SignatureAggregator(FileProposalStore(tmp_path), domain_separator=DOMAIN)
        aggregator.open_proposal(tx, commitment, owners[0].address, sign_commitment(owners[0], commitment))

        def _sign(owner):
            other = SignatureAggregator(FileProposalStore(tmp_path))
            return other.add_signature(commitment, owner.address, sign_commitment(owner, commitment))

        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(_sign, owners[1:]))

        state = aggregator.state(commitment, 6)
        assert set(state.signers) == {o.address for o in owners}
        assert state.executable

    def test_state_key_is_hex_commitment(self, tmp_path):
        owner = make_signer()
        tx, commitment = _proposal()
        aggregator = SignatureAggregator(FileProposalStore(tmp_path))
        state = aggregator.open_proposal(tx, commitment, owner.address, sign_commitment(owner, commitment))
        assert state.commitment == commitment_hex(commitment)
