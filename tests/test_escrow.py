"""
tests/test_escrow.py

Escrow contract: transitions, output commitments and error kinds.

  SCENARIOS   release pays 75 / 425; timeout pays 575 to owner
  BOUNDARY    timeout at clock == timeout_height succeeds, one less fails
  ORDERING    state never regresses out of a terminal state
  ATOMICITY   a rejected transition leaves the current contract untouched
"""

import pytest

from rentsettle.contracts import escrow as esc
from rentsettle.contracts.escrow import (
    EscrowContract,
    EscrowState,
    EscrowStateMachine,
    allowed_actions,
)
from rentsettle.core.crypto import Ed25519KeyManager
from rentsettle.core.exceptions import (
    BadSignatureError,
    InvalidStateError,
    OutputMismatchError,
    TimeoutNotReachedError,
    ValidationError,
)
from rentsettle.core.outputs import LedgerContext
from rentsettle.core.quorum import sign_message

from helpers.parties import both_sign, ctx_for, make_escrow


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def owner():
    return Ed25519KeyManager.generate()


@pytest.fixture
def renter():
    return Ed25519KeyManager.generate()


@pytest.fixture
def funded(owner, renter):
    """Machine holding a FUNDED 500 + 75 escrow, timeout at height 100."""
    machine = EscrowStateMachine(make_escrow(owner, renter))
    machine.fund()
    return machine


@pytest.fixture
def active(funded, renter):
    funded.activate(sign_message(renter, funded.contract.activate_message()))
    return funded


def _release(machine, owner, renter, clock=0, change=None):
    c = machine.contract
    osig, csig = both_sign(owner, renter, c.release_message())
    return machine.release(osig, csig, ctx_for(c.release_commitment(), clock, change))


# ─────────────────────────────────────────────────────────────
# Construction
# ─────────────────────────────────────────────────────────────

class TestEscrowContract:

    def test_create_derives_total(self, owner, renter):
        c = make_escrow(owner, renter)
        assert c.total == 575
        assert c.state == EscrowState.CREATED
        assert c.contract_id.startswith("escrow-")

    def test_fee_above_deposit_rejected(self, owner, renter):
        with pytest.raises(ValidationError):
            make_escrow(owner, renter, deposit_amount=50, rental_fee=75)

    def test_negative_amount_rejected(self, owner, renter):
        with pytest.raises(ValidationError):
            make_escrow(owner, renter, deposit_amount=-1)

    def test_same_party_rejected(self, owner):
        with pytest.raises(ValidationError):
            make_escrow(owner, owner)

    def test_total_mismatch_rejected(self, owner, renter):
        data = make_escrow(owner, renter).to_dict()
        data["total"] = 600
        with pytest.raises(ValidationError):
            EscrowContract.from_dict(data)

    def test_dict_round_trip(self, owner, renter):
        c = make_escrow(owner, renter, state=EscrowState.ACTIVE)
        assert EscrowContract.from_dict(c.to_dict()) == c

    def test_allowed_actions(self):
        assert allowed_actions(EscrowState.FUNDED) == ("activate", "refund")
        assert allowed_actions(EscrowState.ACTIVE) == ("release", "timeout")
        assert allowed_actions(EscrowState.RELEASED) == ()


# ─────────────────────────────────────────────────────────────
# Happy paths
# ─────────────────────────────────────────────────────────────

class TestEscrowScenarios:

    def test_activate_then_release(self, active, owner, renter):
        outcome = _release(active, owner, renter)

        assert outcome.state == EscrowState.RELEASED
        assert active.state == EscrowState.RELEASED
        amounts = [(o.beneficiary, o.amount) for o in outcome.outputs]
        assert amounts == [
            (owner.public_key_hex,  75),
            (renter.public_key_hex, 425),
        ]
        assert outcome.distributed + outcome.retained == active.contract.total
        assert outcome.retained == 75

    def test_timeout_pays_total_to_owner(self, active, owner):
        c = active.contract
        sig = sign_message(owner, c.timeout_message())
        outcome = active.timeout(sig, ctx_for(c.timeout_commitment(), clock=100))

        assert outcome.state == EscrowState.DISPUTED
        assert [(o.beneficiary, o.amount) for o in outcome.outputs] == [
            (owner.public_key_hex, 575),
        ]
        assert outcome.retained == 0

    def test_refund_returns_total_to_renter(self, funded, owner, renter):
        c = funded.contract
        osig, csig = both_sign(owner, renter, c.refund_message())
        outcome = funded.refund(osig, csig, ctx_for(c.refund_commitment()))

        assert outcome.state == EscrowState.REFUNDED
        assert outcome.distributed == c.total
        assert outcome.outputs[0].beneficiary == renter.public_key_hex

    def test_release_with_ledger_change(self, active, owner, renter):
        outcome = _release(active, owner, renter, change="change-out-1")
        assert outcome.state == EscrowState.RELEASED
        assert outcome.outputs_digest == LedgerContext(
            clock=0, outputs=outcome.outputs, change="change-out-1"
        ).outputs_digest()

    def test_zero_fee_release_has_single_output(self, owner, renter):
        machine = EscrowStateMachine(make_escrow(owner, renter, rental_fee=0))
        machine.fund()
        machine.activate(sign_message(renter, machine.contract.activate_message()))
        outcome = _release(machine, owner, renter)
        assert len(outcome.outputs) == 1
        assert outcome.outputs[0].amount == 500

    def test_pure_functions_do_not_touch_input(self, owner, renter):
        c = make_escrow(owner, renter)
        outcome = esc.fund(c)
        assert c.state == EscrowState.CREATED
        assert outcome.contract.state == EscrowState.FUNDED
        assert outcome.previous_state == EscrowState.CREATED


# ─────────────────────────────────────────────────────────────
# Timeout boundary
# ─────────────────────────────────────────────────────────────

class TestTimeoutBoundary:

    def test_inclusive_at_timeout_height(self, active, owner):
        c = active.contract
        sig = sign_message(owner, c.timeout_message())
        outcome = active.timeout(sig, ctx_for(c.timeout_commitment(), clock=c.timeout_height))
        assert outcome.state == EscrowState.DISPUTED

    def test_one_block_early_fails(self, active, owner):
        c = active.contract
        sig = sign_message(owner, c.timeout_message())
        with pytest.raises(TimeoutNotReachedError):
            active.timeout(sig, ctx_for(c.timeout_commitment(), clock=c.timeout_height - 1))
        assert active.state == EscrowState.ACTIVE

    def test_renter_cannot_claim_timeout(self, active, renter):
        c = active.contract
        sig = sign_message(renter, c.timeout_message())
        with pytest.raises(BadSignatureError):
            active.timeout(sig, ctx_for(c.timeout_commitment(), clock=200))


# ─────────────────────────────────────────────────────────────
# Rejections
# ─────────────────────────────────────────────────────────────

class TestEscrowRejections:

    def test_activate_requires_funded(self, owner, renter):
        machine = EscrowStateMachine(make_escrow(owner, renter))
        sig = sign_message(renter, machine.contract.activate_message())
        with pytest.raises(InvalidStateError):
            machine.activate(sig)
        assert machine.state == EscrowState.CREATED

    def test_activate_requires_counterparty(self, funded, owner):
        sig = sign_message(owner, funded.contract.activate_message())
        with pytest.raises(BadSignatureError):
            funded.activate(sig)
        assert funded.state == EscrowState.FUNDED

    def test_release_before_activate(self, funded, owner, renter):
        with pytest.raises(InvalidStateError):
            _release(funded, owner, renter)
        assert funded.state == EscrowState.FUNDED

    def test_release_with_one_signature(self, active, owner, renter):
        c = active.contract
        osig = sign_message(owner, c.release_message())
        with pytest.raises(BadSignatureError):
            active.release(osig, "", ctx_for(c.release_commitment()))
        assert active.state == EscrowState.ACTIVE

    def test_release_with_wrong_outputs(self, active, owner, renter):
        c = active.contract
        osig, csig = both_sign(owner, renter, c.release_message())
        ctx = LedgerContext(clock=0, outputs=[
            (owner.public_key_hex,  100),
            (renter.public_key_hex, 400),
        ])
        with pytest.raises(OutputMismatchError):
            active.release(osig, csig, ctx)
        assert active.state == EscrowState.ACTIVE

    def test_release_outputs_in_wrong_order(self, active, owner, renter):
        c = active.contract
        osig, csig = both_sign(owner, renter, c.release_message())
        ctx = LedgerContext(clock=0, outputs=list(reversed(c.release_commitment().outputs)))
        with pytest.raises(OutputMismatchError):
            active.release(osig, csig, ctx)

    def test_refund_after_activate(self, active, owner, renter):
        c = active.contract
        osig, csig = both_sign(owner, renter, c.refund_message())
        with pytest.raises(InvalidStateError):
            active.refund(osig, csig, ctx_for(c.refund_commitment()))

    def test_fund_twice(self, funded):
        with pytest.raises(InvalidStateError):
            funded.fund()


# ─────────────────────────────────────────────────────────────
# Terminal states
# ─────────────────────────────────────────────────────────────

class TestNoRegression:

    def test_released_is_terminal(self, active, owner, renter):
        _release(active, owner, renter)
        released = active.contract
        assert released.is_terminal

        c = active.contract
        with pytest.raises(InvalidStateError):
            _release(active, owner, renter)
        with pytest.raises(InvalidStateError):
            active.timeout(
                sign_message(owner, c.timeout_message()),
                ctx_for(c.timeout_commitment(), clock=1000),
            )
        with pytest.raises(InvalidStateError):
            active.fund()
        with pytest.raises(InvalidStateError):
            active.activate(sign_message(renter, c.activate_message()))
        assert active.contract == released

    @pytest.mark.parametrize("state", [
        EscrowState.RELEASED, EscrowState.DISPUTED, EscrowState.REFUNDED,
    ])
    def test_every_action_rejected_from_terminal(self, owner, renter, state):
        c = make_escrow(owner, renter, state=state)
        ctx = ctx_for(c.timeout_commitment(), clock=10_000)
        osig, csig = both_sign(owner, renter, c.release_message())
        calls = [
            lambda: esc.fund(c),
            lambda: esc.activate(c, csig),
            lambda: esc.release(c, osig, csig, ctx),
            lambda: esc.timeout(c, osig, ctx),
            lambda: esc.refund(c, osig, csig, ctx),
        ]
        for call in calls:
            with pytest.raises(InvalidStateError):
                call()

    def test_release_then_timeout_race(self, active, owner, renter):
        """Whichever settles first wins; the other is an InvalidState."""
        c = active.contract
        timeout_sig = sign_message(owner, c.timeout_message())
        _release(active, owner, renter, clock=c.timeout_height)
        with pytest.raises(InvalidStateError):
            active.timeout(timeout_sig, ctx_for(c.timeout_commitment(), clock=c.timeout_height))
        assert active.state == EscrowState.RELEASED
