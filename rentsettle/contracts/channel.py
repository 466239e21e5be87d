"""
rentsettle/contracts/channel.py

Payment Channel — bidirectional, sequence-numbered balance split.

State graph:

    OPEN ──update(owner, counterparty, seq↑)──────────▶ OPEN
    OPEN ──cooperative_close(owner, counterparty)──────▶ CLOSED
    OPEN ──initiate_close(owner | counterparty)────────▶ CLOSING
    CLOSING ──update(seq↑) before the window ends──────▶ OPEN
    CLOSING ──cooperative_close(owner, counterparty)───▶ CLOSED
    CLOSING ──finalize_close(any party) after window───▶ CLOSED

Invariants:
    owner_balance + counterparty_balance == capacity    (always)
    sequence strictly increases across accepted updates (replace-by-sequence)

The dispute window is a clock DELTA: initiate_close records the ledger
clock, finalize_close needs clock >= close_requested_at + dispute_timeout.
During the window the other party may supersede the close with any
strictly-higher-sequence update; that returns the channel to OPEN.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from rentsettle.core.crypto import validate_public_key_hex
from rentsettle.core.exceptions import (
    InvalidStateError,
    SequenceViolationError,
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
from rentsettle.core.quorum import (
    Signer,
    SignatureQuorum,
    transition_message,
    verify_any,
)


logger = logging.getLogger(__name__)


class ChannelState(Enum):
    OPEN    = "open"
    CLOSING = "closing"
    CLOSED  = "closed"


def channel_update_message(
    channel_id:           str,
    owner_balance:        int,
    counterparty_balance: int,
    sequence:             int,
) -> Dict[str, Any]:
    """
    The message both parties sign for a balance update.

    Shared by the on-chain update() and off-chain ChannelUpdate records,
    so an off-chain update can be submitted on-chain unchanged.
    """
    return transition_message(
        "channel", channel_id, "update",
        owner_balance=        owner_balance,
        counterparty_balance= counterparty_balance,
        sequence=             sequence,
    )


# ─────────────────────────────────────────────────────────────
# PaymentChannel
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PaymentChannel:
    """Immutable snapshot of one payment channel."""
    channel_id:           str
    owner_key:            str
    counterparty_key:     str
    capacity:             int
    dispute_timeout:      int
    owner_balance:        int
    counterparty_balance: int
    sequence:             int                   = 0
    state:                ChannelState          = ChannelState.OPEN
    close_requested_at:   Optional[int]         = None
    close_initiator:      Optional[str]         = None

    def __post_init__(self) -> None:
        if not isinstance(self.channel_id, str) or not self.channel_id:
            raise ValidationError("channel_id must be a non-empty string")
        validate_public_key_hex(self.owner_key, "owner_key")
        validate_public_key_hex(self.counterparty_key, "counterparty_key")
        if self.owner_key == self.counterparty_key:
            raise ValidationError("owner_key and counterparty_key must differ")
        validate_amount(self.capacity, "capacity")
        validate_amount(self.dispute_timeout, "dispute_timeout")
        validate_amount(self.owner_balance, "owner_balance")
        validate_amount(self.counterparty_balance, "counterparty_balance")
        validate_amount(self.sequence, "sequence")
        if self.owner_balance + self.counterparty_balance != self.capacity:
            raise ValidationError(
                "balances must sum to capacity",
                {
                    "owner_balance":        self.owner_balance,
                    "counterparty_balance": self.counterparty_balance,
                    "capacity":             self.capacity,
                },
            )
        if not isinstance(self.state, ChannelState):
            raise ValidationError(f"state must be ChannelState, got {self.state!r}")
        if (self.state == ChannelState.CLOSING) != (self.close_requested_at is not None):
            raise ValidationError("close_requested_at is set exactly while CLOSING")

    # ── Constructor ───────────────────────────────────────────

    @classmethod
    def open(
        cls,
        owner_key:        str,
        counterparty_key: str,
        capacity:         int,
        dispute_timeout:  int,
        channel_id:       Optional[str] = None,
    ) -> "PaymentChannel":
        """
        New OPEN channel. The counterparty funds it, so the whole
        capacity starts on their side at sequence 0.
        """
        validate_amount(capacity, "capacity")
        return cls(
            channel_id=           channel_id or f"channel-{uuid.uuid4()}",
            owner_key=            owner_key,
            counterparty_key=     counterparty_key,
            capacity=             capacity,
            dispute_timeout=      dispute_timeout,
            owner_balance=        0,
            counterparty_balance= capacity,
        )

    @property
    def close_deadline(self) -> Optional[int]:
        """Clock value from which finalize_close is allowed, or None if not CLOSING."""
        if self.close_requested_at is None:
            return None
        return self.close_requested_at + self.dispute_timeout

    # ── Distribution ──────────────────────────────────────────

    def balance_commitment(self) -> OutputCommitment:
        """Current balances, owner first. A zero balance gets no output."""
        return OutputCommitment([
            (self.owner_key,        self.owner_balance),
            (self.counterparty_key, self.counterparty_balance),
        ])

    # ── Messages ──────────────────────────────────────────────

    def _close_message(self, action: str) -> Dict[str, Any]:
        return transition_message(
            "channel", self.channel_id, action,
            owner_balance=        self.owner_balance,
            counterparty_balance= self.counterparty_balance,
            sequence=             self.sequence,
        )

    def update_message(
        self,
        owner_balance:        int,
        counterparty_balance: int,
        sequence:             int,
    ) -> Dict[str, Any]:
        return channel_update_message(
            self.channel_id, owner_balance, counterparty_balance, sequence
        )

    def cooperative_close_message(self) -> Dict[str, Any]:
        return self._close_message("cooperative_close")

    def initiate_close_message(self) -> Dict[str, Any]:
        return self._close_message("initiate_close")

    def finalize_close_message(self) -> Dict[str, Any]:
        return self._close_message("finalize_close")

    # ── Serialization ─────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id":           self.channel_id,
            "owner_key":            self.owner_key,
            "counterparty_key":     self.counterparty_key,
            "capacity":             self.capacity,
            "dispute_timeout":      self.dispute_timeout,
            "owner_balance":        self.owner_balance,
            "counterparty_balance": self.counterparty_balance,
            "sequence":             self.sequence,
            "state":                self.state.value,
            "close_requested_at":   self.close_requested_at,
            "close_initiator":      self.close_initiator,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentChannel":
        return cls(
            channel_id=           data["channel_id"],
            owner_key=            data["owner_key"],
            counterparty_key=     data["counterparty_key"],
            capacity=             data["capacity"],
            dispute_timeout=      data["dispute_timeout"],
            owner_balance=        data["owner_balance"],
            counterparty_balance= data["counterparty_balance"],
            sequence=             data.get("sequence", 0),
            state=                ChannelState(data.get("state", "open")),
            close_requested_at=   data.get("close_requested_at"),
            close_initiator=      data.get("close_initiator"),
        )


@dataclass(frozen=True)
class ChannelOutcome:
    """Result of an accepted channel transition."""
    channel:        PaymentChannel
    action:         str
    previous_state: ChannelState
    outputs:        Tuple[Output, ...] = field(default_factory=tuple)
    outputs_digest: Optional[str]      = None

    @property
    def state(self) -> ChannelState:
        return self.channel.state

    @property
    def distributed(self) -> int:
        return sum(o.amount for o in self.outputs)


# ─────────────────────────────────────────────────────────────
# Pure transition functions
# ─────────────────────────────────────────────────────────────

def _require_state(channel: PaymentChannel, action: str, *allowed: ChannelState) -> None:
    if channel.state not in allowed:
        raise InvalidStateError(
            f"Cannot {action} channel in state {channel.state.value}",
            {
                "channel_id": channel.channel_id,
                "required":   "|".join(s.value for s in allowed),
            },
        )


def update(
    channel:                  PaymentChannel,
    new_owner_balance:        int,
    new_counterparty_balance: int,
    new_sequence:             int,
    owner_sig:                str,
    counterparty_sig:         str,
    ctx:                      Optional[LedgerContext] = None,
) -> ChannelOutcome:
    """
    Replace balances with a strictly newer, bilaterally signed split.

    From CLOSING this is the dispute path: allowed only while
    ctx.clock < close_deadline, and it returns the channel to OPEN.
    """
    _require_state(channel, "update", ChannelState.OPEN, ChannelState.CLOSING)
    if channel.state == ChannelState.CLOSING:
        if ctx is None:
            raise InvalidStateError(
                "Updating a closing channel requires the ledger clock",
                {"channel_id": channel.channel_id},
            )
        if ctx.clock >= channel.close_deadline:
            raise InvalidStateError(
                "Dispute window has ended; channel can only be finalized",
                {"clock": ctx.clock, "close_deadline": channel.close_deadline},
            )

    if isinstance(new_sequence, bool) or not isinstance(new_sequence, int):
        raise ValidationError(f"sequence must be int, got {new_sequence!r}")
    if new_sequence <= channel.sequence:
        raise SequenceViolationError(
            "Sequence must strictly increase",
            {"current": channel.sequence, "submitted": new_sequence},
        )
    validate_amount(new_owner_balance, "owner_balance")
    validate_amount(new_counterparty_balance, "counterparty_balance")
    if new_owner_balance + new_counterparty_balance != channel.capacity:
        raise SequenceViolationError(
            "Balances must sum to channel capacity",
            {
                "owner_balance":        new_owner_balance,
                "counterparty_balance": new_counterparty_balance,
                "capacity":             channel.capacity,
            },
        )

    message = channel.update_message(
        new_owner_balance, new_counterparty_balance, new_sequence
    )
    SignatureQuorum(message).require([
        Signer("owner",        channel.owner_key,        owner_sig),
        Signer("counterparty", channel.counterparty_key, counterparty_sig),
    ])

    return ChannelOutcome(
        channel=replace(
            channel,
            owner_balance=        new_owner_balance,
            counterparty_balance= new_counterparty_balance,
            sequence=             new_sequence,
            state=                ChannelState.OPEN,
            close_requested_at=   None,
            close_initiator=      None,
        ),
        action=         "update",
        previous_state= channel.state,
    )


def cooperative_close(
    channel:          PaymentChannel,
    owner_sig:        str,
    counterparty_sig: str,
    ctx:              LedgerContext,
) -> ChannelOutcome:
    """Both parties close at the recorded balances. OPEN | CLOSING → CLOSED."""
    _require_state(channel, "cooperative_close", ChannelState.OPEN, ChannelState.CLOSING)
    SignatureQuorum(channel.cooperative_close_message()).require([
        Signer("owner",        channel.owner_key,        owner_sig),
        Signer("counterparty", channel.counterparty_key, counterparty_sig),
    ])
    bound = require_matching_outputs(channel.balance_commitment(), ctx)
    return ChannelOutcome(
        channel=        _closed(channel),
        action=         "cooperative_close",
        previous_state= channel.state,
        outputs=        bound.outputs,
        outputs_digest= bound.digest(),
    )


def initiate_close(
    channel:       PaymentChannel,
    initiator_sig: str,
    is_owner:      bool,
    ctx:           LedgerContext,
) -> ChannelOutcome:
    """
    One party starts the dispute window. OPEN → CLOSING.

    ctx.outputs must commit to the current balances: the state the
    initiator intends to settle with.
    """
    _require_state(channel, "initiate_close", ChannelState.OPEN)
    role = "owner" if is_owner else "counterparty"
    key  = channel.owner_key if is_owner else channel.counterparty_key
    SignatureQuorum(channel.initiate_close_message()).require([
        Signer(role, key, initiator_sig),
    ])
    bound = require_matching_outputs(channel.balance_commitment(), ctx)
    return ChannelOutcome(
        channel=replace(
            channel,
            state=              ChannelState.CLOSING,
            close_requested_at= ctx.clock,
            close_initiator=    role,
        ),
        action=         "initiate_close",
        previous_state= channel.state,
        outputs_digest= bound.digest(),
    )


def finalize_close(
    channel: PaymentChannel,
    sig:     str,
    ctx:     LedgerContext,
) -> ChannelOutcome:
    """
    CLOSING → CLOSED once the dispute window has elapsed.
    One signature from either party; no counter-signature.
    """
    _require_state(channel, "finalize_close", ChannelState.CLOSING)
    if ctx.clock < channel.close_deadline:
        raise TimeoutNotReachedError(
            "Dispute window has not elapsed",
            {"clock": ctx.clock, "close_deadline": channel.close_deadline},
        )
    verify_any(channel.finalize_close_message(), [
        Signer("owner",        channel.owner_key,        sig),
        Signer("counterparty", channel.counterparty_key, sig),
    ])
    bound = require_matching_outputs(channel.balance_commitment(), ctx)
    return ChannelOutcome(
        channel=        _closed(channel),
        action=         "finalize_close",
        previous_state= channel.state,
        outputs=        bound.outputs,
        outputs_digest= bound.digest(),
    )


def _closed(channel: PaymentChannel) -> PaymentChannel:
    return replace(
        channel,
        state=              ChannelState.CLOSED,
        close_requested_at= None,
        close_initiator=    None,
    )


# ─────────────────────────────────────────────────────────────
# PaymentChannelStateMachine
# ─────────────────────────────────────────────────────────────

class PaymentChannelStateMachine:
    """
    Holds the current PaymentChannel value for one instance.

    Single writer. The ledger's finality decides between conflicting
    submissions; this class only guarantees that a stale or duplicate
    call raises instead of silently doing nothing.
    """

    def __init__(self, channel: PaymentChannel) -> None:
        self._channel = channel

    @property
    def channel(self) -> PaymentChannel:
        return self._channel

    @property
    def state(self) -> ChannelState:
        return self._channel.state

    def update(
        self,
        new_owner_balance:        int,
        new_counterparty_balance: int,
        new_sequence:             int,
        owner_sig:                str,
        counterparty_sig:         str,
        ctx:                      Optional[LedgerContext] = None,
    ) -> ChannelOutcome:
        return self._apply("update", lambda c: update(
            c, new_owner_balance, new_counterparty_balance, new_sequence,
            owner_sig, counterparty_sig, ctx,
        ))

    def cooperative_close(
        self,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> ChannelOutcome:
        return self._apply(
            "cooperative_close",
            lambda c: cooperative_close(c, owner_sig, counterparty_sig, ctx),
        )

    def initiate_close(
        self,
        initiator_sig: str,
        is_owner:      bool,
        ctx:           LedgerContext,
    ) -> ChannelOutcome:
        return self._apply(
            "initiate_close",
            lambda c: initiate_close(c, initiator_sig, is_owner, ctx),
        )

    def finalize_close(self, sig: str, ctx: LedgerContext) -> ChannelOutcome:
        return self._apply("finalize_close", lambda c: finalize_close(c, sig, ctx))

    def _apply(self, action: str, transition) -> ChannelOutcome:
        current = self._channel
        try:
            outcome = transition(current)
        except TransitionError as exc:
            logger.warning(
                "channel %s rejected: %s %s (state=%s, sequence=%d)",
                current.channel_id, exc.kind, action,
                current.state.value, current.sequence,
            )
            raise
        self._channel = outcome.channel
        logger.info(
            "channel %s %s: %s -> %s (sequence=%d)",
            current.channel_id, action,
            outcome.previous_state.value, outcome.state.value,
            outcome.channel.sequence,
        )
        return outcome

    def __repr__(self) -> str:
        return (
            f"PaymentChannelStateMachine(channel_id={self._channel.channel_id!r}, "
            f"state={self._channel.state.value}, sequence={self._channel.sequence})"
        )
