"""Tests for the local allowance policy."""

import pytest

from agent_treasury.errors import EncodingError, InsufficientAllowanceError, NotADelegateError
from agent_treasury.policy import Allow, AllowanceState, Deny, DenyReason, decide_transfer
from agent_treasury.units import to_wei

AGENT = "0x" + "a1" * 20
OTHER = "0x" + "b2" * 20
NOW = 29_000_000


def _state(spent="45", last=NOW - 60, reset=1440, amount="50"):
    return AllowanceState(to_wei(amount), to_wei(spent), reset, last, 3)


class TestAllowanceState:
    def test_from_chain(self):
        state = AllowanceState.from_chain([10, 4, 1440, NOW, 2])
        assert state == AllowanceState(10, 4, 1440, NOW, 2)

    def test_from_chain_rejects_short_tuple(self):
        with pytest.raises(EncodingError):
            AllowanceState.from_chain([10, 4, 1440])

    def test_remaining_within_window(self):
        assert _state().remaining(NOW) == to_wei("5")

    def test_reset_due_exactly_at_boundary(self):
        state = _state(last=NOW - 1440)
        assert state.reset_due(NOW)
        assert state.remaining(NOW) == to_wei("50")
        assert not state.reset_due(NOW - 1)

    def test_one_shot_allowance_never_resets(self):
        state = _state(reset=0, last=0)
        assert not state.reset_due(NOW + 10**6)
        assert state.next_reset_minutes(NOW) is None

    def test_next_reset_aligns_to_period(self):
        state = _state(last=NOW - 1440 * 2 - 100)
        assert state.next_reset_minutes(NOW) == NOW - 100 + 1440
        assert _state().next_reset_minutes(NOW) == NOW - 60 + 1440


class TestDecideTransfer:
    def test_over_remaining_is_denied(self):
        decision = decide_transfer(_state(), to_wei("10"), NOW, delegate=AGENT, registered_delegates=[AGENT])
        assert isinstance(decision, Deny)
        assert decision.reason is DenyReason.INSUFFICIENT_ALLOWANCE
        assert decision.remaining == to_wei("5")
        assert not decision.allowed

    def test_within_remaining_is_allowed(self):
        decision = decide_transfer(_state(), to_wei("5"), NOW, delegate=AGENT, registered_delegates=[AGENT])
        assert decision == Allow(amount=to_wei("5"), remaining=0)
        assert decision.allowed

    def test_after_reset_full_amount_is_available(self):
        decision = decide_transfer(
            _state(last=NOW - 1440), to_wei("10"), NOW, delegate=AGENT, registered_delegates=[AGENT]
        )
        assert isinstance(decision, Allow)
        assert decision.remaining == to_wei("40")

    def test_unregistered_delegate_is_denied_first(self):
        decision = decide_transfer(_state(), to_wei("1"), NOW, delegate=OTHER, registered_delegates=[AGENT])
        assert decision.reason is DenyReason.NOT_A_DELEGATE
        with pytest.raises(NotADelegateError):
            decision.raise_for_denial()

    def test_insufficient_raises_typed_error(self):
        decision = decide_transfer(_state(), to_wei("60"), NOW, delegate=AGENT, registered_delegates=[AGENT])
        with pytest.raises(InsufficientAllowanceError) as exc:
            decision.raise_for_denial()
        assert exc.value.requested == to_wei("60")

    def test_delegate_comparison_ignores_case(self):
        decision = decide_transfer(
            _state(), to_wei("1"), NOW, delegate=AGENT.upper().replace("0X", "0x"), registered_delegates=[AGENT]
        )
        assert isinstance(decision, Allow)

    def test_evaluation_does_not_mutate_state(self):
        state = _state(last=NOW - 1440)
        decide_transfer(state, to_wei("10"), NOW, delegate=AGENT, registered_delegates=[AGENT])
        assert state.spent == to_wei("45")
        assert state.last_reset_min == NOW - 1440

    @pytest.mark.parametrize("amount", [0, -1, 2**96])
    def test_rejects_out_of_range_amount(self, amount):
        with pytest.raises(EncodingError):
            decide_transfer(_state(), amount, NOW, delegate=AGENT, registered_delegates=[AGENT])
