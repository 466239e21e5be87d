"""
rentsettle/contracts/escrow.py

Escrow Contract — lump-sum rental deposit + fee, single release.

State graph (forward only):

    CREATED ──(funding, outside the core)──▶ FUNDED
    FUNDED  ──activate(counterparty)──────▶ ACTIVE
    FUNDED  ──refund(owner, counterparty)─▶ REFUNDED
    ACTIVE  ──release(owner, counterparty)▶ RELEASED
    ACTIVE  ──timeout(owner, clock)───────▶ DISPUTED

RELEASED, DISPUTED and REFUNDED are terminal.

Transitions are pure functions: (contract, signatures, LedgerContext) →
EscrowOutcome carrying a NEW contract value. The input contract is never
mutated, so a raised transition leaves nothing half-applied.
EscrowStateMachine holds the current value for single-writer callers.

Output distributions (owner first, zero amounts omitted):
    release  →  owner: rental_fee, counterparty: deposit_amount − rental_fee
    timeout  →  owner: total
    refund   →  counterparty: total
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from rentsettle.core.crypto import validate_public_key_hex
from rentsettle.core.exceptions import (
    InvalidStateError,
    TimeoutNotReachedError,
    TransitionError,
    ValidationError,
)
from rentsettle.core.outputs import (
    LedgerContext,
    Output,
    OutputCommitment,
    require_matching_outputs,
    validate_amount,
)
from rentsettle.core.quorum import Signer, SignatureQuorum, transition_message


logger = logging.getLogger(__name__)


class EscrowState(Enum):
    CREATED  = "created"
    FUNDED   = "funded"
    ACTIVE   = "active"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


TERMINAL_ESCROW_STATES: FrozenSet[EscrowState] = frozenset({
    EscrowState.RELEASED,
    EscrowState.DISPUTED,
    EscrowState.REFUNDED,
})

# action → (required state, resulting state)
ESCROW_TRANSITIONS: Dict[str, Tuple[EscrowState, EscrowState]] = {
    "fund":     (EscrowState.CREATED, EscrowState.FUNDED),
    "activate": (EscrowState.FUNDED,  EscrowState.ACTIVE),
    "refund":   (EscrowState.FUNDED,  EscrowState.REFUNDED),
    "release":  (EscrowState.ACTIVE,  EscrowState.RELEASED),
    "timeout":  (EscrowState.ACTIVE,  EscrowState.DISPUTED),
}


def allowed_actions(state: EscrowState) -> Tuple[str, ...]:
    """Actions whose required state is `state`, in graph order."""
    return tuple(a for a, (src, _) in ESCROW_TRANSITIONS.items() if src == state)


# ─────────────────────────────────────────────────────────────
# EscrowContract
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EscrowContract:
    """
    Immutable snapshot of one escrow instance.

    total == deposit_amount + rental_fee is fixed at creation;
    rental_fee <= deposit_amount is checked here and nowhere else.
    """
    contract_id:      str
    owner_key:        str
    counterparty_key: str
    deposit_amount:   int
    rental_fee:       int
    timeout_height:   int
    rental_token_ref: str
    total:            int
    state:            EscrowState = EscrowState.CREATED

    def __post_init__(self) -> None:
        if not isinstance(self.contract_id, str) or not self.contract_id:
            raise ValidationError("contract_id must be a non-empty string")
        validate_public_key_hex(self.owner_key, "owner_key")
        validate_public_key_hex(self.counterparty_key, "counterparty_key")
        if self.owner_key == self.counterparty_key:
            raise ValidationError("owner_key and counterparty_key must differ")
        validate_amount(self.deposit_amount, "deposit_amount")
        validate_amount(self.rental_fee, "rental_fee")
        validate_amount(self.timeout_height, "timeout_height")
        if self.rental_fee > self.deposit_amount:
            raise ValidationError(
                "rental_fee must not exceed deposit_amount",
                {"rental_fee": self.rental_fee, "deposit_amount": self.deposit_amount},
            )
        if self.total != self.deposit_amount + self.rental_fee:
            raise ValidationError(
                "total must equal deposit_amount + rental_fee",
                {"total": self.total},
            )
        if not isinstance(self.state, EscrowState):
            raise ValidationError(f"state must be EscrowState, got {self.state!r}")

    # ── Constructor ───────────────────────────────────────────

    @classmethod
    def create(
        cls,
        owner_key:        str,
        counterparty_key: str,
        deposit_amount:   int,
        rental_fee:       int,
        timeout_height:   int,
        rental_token_ref: str = "",
        contract_id:      Optional[str] = None,
    ) -> "EscrowContract":
        """New escrow in CREATED state. total is derived, never supplied."""
        validate_amount(deposit_amount, "deposit_amount")
        validate_amount(rental_fee, "rental_fee")
        return cls(
            contract_id=      contract_id or f"escrow-{uuid.uuid4()}",
            owner_key=        owner_key,
            counterparty_key= counterparty_key,
            deposit_amount=   deposit_amount,
            rental_fee=       rental_fee,
            timeout_height=   timeout_height,
            rental_token_ref= rental_token_ref,
            total=            deposit_amount + rental_fee,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ESCROW_STATES

    # ── Distributions ─────────────────────────────────────────

    def release_commitment(self) -> OutputCommitment:
        return OutputCommitment([
            (self.owner_key,        self.rental_fee),
            (self.counterparty_key, self.deposit_amount - self.rental_fee),
        ])

    def timeout_commitment(self) -> OutputCommitment:
        return OutputCommitment([(self.owner_key, self.total)])

    def refund_commitment(self) -> OutputCommitment:
        return OutputCommitment([(self.counterparty_key, self.total)])

    # ── Messages ──────────────────────────────────────────────

    def _message(self, action: str, **fields: Any) -> Dict[str, Any]:
        return transition_message("escrow", self.contract_id, action, **fields)

    def activate_message(self) -> Dict[str, Any]:
        return self._message(
            "activate",
            rental_token_ref= self.rental_token_ref,
            total=            self.total,
        )

    def release_message(self) -> Dict[str, Any]:
        return self._message("release", outputs_digest=self.release_commitment().digest())

    def timeout_message(self) -> Dict[str, Any]:
        return self._message("timeout", outputs_digest=self.timeout_commitment().digest())

    def refund_message(self) -> Dict[str, Any]:
        return self._message("refund", outputs_digest=self.refund_commitment().digest())

    # ── Serialization ─────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id":      self.contract_id,
            "owner_key":        self.owner_key,
            "counterparty_key": self.counterparty_key,
            "deposit_amount":   self.deposit_amount,
            "rental_fee":       self.rental_fee,
            "total":            self.total,
            "timeout_height":   self.timeout_height,
            "rental_token_ref": self.rental_token_ref,
            "state":            self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowContract":
        return cls(
            contract_id=      data["contract_id"],
            owner_key=        data["owner_key"],
            counterparty_key= data["counterparty_key"],
            deposit_amount=   data["deposit_amount"],
            rental_fee=       data["rental_fee"],
            timeout_height=   data["timeout_height"],
            rental_token_ref= data.get("rental_token_ref", ""),
            total=            data["total"],
            state=            EscrowState(data["state"]),
        )


@dataclass(frozen=True)
class EscrowOutcome:
    """
    Result of an accepted escrow transition.

    outputs is empty for transitions that move no value (fund, activate).
    retained is the part of total not paid out by this transition.
    """
    contract:       EscrowContract
    action:         str
    previous_state: EscrowState
    outputs:        Tuple[Output, ...] = field(default_factory=tuple)
    outputs_digest: Optional[str]      = None

    @property
    def state(self) -> EscrowState:
        return self.contract.state

    @property
    def distributed(self) -> int:
        return sum(o.amount for o in self.outputs)

    @property
    def retained(self) -> int:
        if not self.outputs:
            return 0
        return self.contract.total - self.distributed


# ─────────────────────────────────────────────────────────────
# Pure transition functions
# ─────────────────────────────────────────────────────────────

def _advance(contract: EscrowContract, action: str) -> EscrowContract:
    required, target = ESCROW_TRANSITIONS[action]
    if contract.state != required:
        raise InvalidStateError(
            f"Cannot {action} escrow in state {contract.state.value}",
            {
                "contract_id": contract.contract_id,
                "required":    required.value,
            },
        )
    return replace(contract, state=target)


def _settled(
    contract:   EscrowContract,
    action:     str,
    next_value: EscrowContract,
    expected:   OutputCommitment,
    ctx:        LedgerContext,
) -> EscrowOutcome:
    bound = require_matching_outputs(expected, ctx)
    return EscrowOutcome(
        contract=       next_value,
        action=         action,
        previous_state= contract.state,
        outputs=        bound.outputs,
        outputs_digest= bound.digest(),
    )


def fund(contract: EscrowContract) -> EscrowOutcome:
    """
    CREATED → FUNDED.

    Not one of the four core operations: the booking layer calls this
    once the ledger confirms the deposit output.
    """
    return EscrowOutcome(
        contract=       _advance(contract, "fund"),
        action=         "fund",
        previous_state= contract.state,
    )


def activate(contract: EscrowContract, counterparty_sig: str) -> EscrowOutcome:
    """FUNDED → ACTIVE. Counterparty attests receipt of the rented item."""
    next_value = _advance(contract, "activate")
    SignatureQuorum(contract.activate_message()).require([
        Signer("counterparty", contract.counterparty_key, counterparty_sig),
    ])
    return EscrowOutcome(
        contract=       next_value,
        action=         "activate",
        previous_state= contract.state,
    )


def release(
    contract:         EscrowContract,
    owner_sig:        str,
    counterparty_sig: str,
    ctx:              LedgerContext,
) -> EscrowOutcome:
    """ACTIVE → RELEASED. Fee to owner, deposit net of fee to counterparty."""
    next_value = _advance(contract, "release")
    SignatureQuorum(contract.release_message()).require([
        Signer("owner",        contract.owner_key,        owner_sig),
        Signer("counterparty", contract.counterparty_key, counterparty_sig),
    ])
    return _settled(contract, "release", next_value, contract.release_commitment(), ctx)


def timeout(
    contract:  EscrowContract,
    owner_sig: str,
    ctx:       LedgerContext,
) -> EscrowOutcome:
    """
    ACTIVE → DISPUTED once ctx.clock >= timeout_height (inclusive).
    Owner alone claims total.
    """
    next_value = _advance(contract, "timeout")
    if ctx.clock < contract.timeout_height:
        raise TimeoutNotReachedError(
            "Escrow timeout not reached",
            {"clock": ctx.clock, "timeout_height": contract.timeout_height},
        )
    SignatureQuorum(contract.timeout_message()).require([
        Signer("owner", contract.owner_key, owner_sig),
    ])
    return _settled(contract, "timeout", next_value, contract.timeout_commitment(), ctx)


def refund(
    contract:         EscrowContract,
    owner_sig:        str,
    counterparty_sig: str,
    ctx:              LedgerContext,
) -> EscrowOutcome:
    """FUNDED → REFUNDED. Rental cancelled before pickup; total back to counterparty."""
    next_value = _advance(contract, "refund")
    SignatureQuorum(contract.refund_message()).require([
        Signer("owner",        contract.owner_key,        owner_sig),
        Signer("counterparty", contract.counterparty_key, counterparty_sig),
    ])
    return _settled(contract, "refund", next_value, contract.refund_commitment(), ctx)


# ─────────────────────────────────────────────────────────────
# EscrowStateMachine
# ─────────────────────────────────────────────────────────────

class EscrowStateMachine:
    """
    Holds the current EscrowContract value for one instance.

    Single writer. The current value is replaced only after a transition
    function returns; a raised transition leaves it untouched.
    """

    def __init__(self, contract: EscrowContract) -> None:
        self._contract = contract

    @property
    def contract(self) -> EscrowContract:
        return self._contract

    @property
    def state(self) -> EscrowState:
        return self._contract.state

    def fund(self) -> EscrowOutcome:
        return self._apply("fund", lambda c: fund(c))

    def activate(self, counterparty_sig: str) -> EscrowOutcome:
        return self._apply("activate", lambda c: activate(c, counterparty_sig))

    def release(
        self,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> EscrowOutcome:
        return self._apply(
            "release", lambda c: release(c, owner_sig, counterparty_sig, ctx)
        )

    def timeout(self, owner_sig: str, ctx: LedgerContext) -> EscrowOutcome:
        return self._apply("timeout", lambda c: timeout(c, owner_sig, ctx))

    def refund(
        self,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> EscrowOutcome:
        return self._apply(
            "refund", lambda c: refund(c, owner_sig, counterparty_sig, ctx)
        )

    def _apply(self, action: str, transition) -> EscrowOutcome:
        current = self._contract
        try:
            outcome = transition(current)
        except TransitionError as exc:
            logger.warning(
                "escrow %s rejected: %s %s (state=%s)",
                current.contract_id, exc.kind, action, current.state.value,
            )
            raise
        self._contract = outcome.contract
        logger.info(
            "escrow %s %s: %s -> %s",
            current.contract_id, action,
            outcome.previous_state.value, outcome.state.value,
        )
        return outcome

    def __repr__(self) -> str:
        return (
            f"EscrowStateMachine(contract_id={self._contract.contract_id!r}, "
            f"state={self._contract.state.value})"
        )
