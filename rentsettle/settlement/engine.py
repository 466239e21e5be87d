"""
Settlement engine — the booking layer's single entry point into the core.

The engine:
- opens escrows and channels with configured defaults
- runs a transition and turns the result into a SettlementRecord
- converts every rentsettle error into a failed record whose reason reads
  "settlement attempt failed: <kind>"

It does NOT retry, and it does NOT decide between competing transitions.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from rentsettle.contracts.channel import (
    ChannelOutcome,
    PaymentChannel,
    PaymentChannelStateMachine,
)
from rentsettle.contracts.escrow import (
    EscrowContract,
    EscrowOutcome,
    EscrowStateMachine,
)
from rentsettle.contracts.release import ReleaseProposal, ReleaseType
from rentsettle.core.config import SettlementConfig
from rentsettle.core.exceptions import (
    RentSettleError,
    SequenceViolationError,
    ValidationError,
)
from rentsettle.core.outputs import LedgerContext, Output, validate_amount
from rentsettle.core.time import utc_timestamp
from rentsettle.ledger.channel_ledger import OffChainChannelLedger


logger = logging.getLogger(__name__)

Outcome = Union[EscrowOutcome, ChannelOutcome]


@dataclass(frozen=True)
class SettlementRecord:
    """What the booking layer learns after one settlement attempt."""
    settlement_id:  str
    contract_id:    str
    action:         str
    success:        bool
    state:          str
    reason:         str
    settled_at:     str
    outputs:        Tuple[Output, ...] = field(default_factory=tuple)
    outputs_digest: Optional[str]      = None
    retained:       int                = 0
    error_kind:     Optional[str]      = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id":  self.settlement_id,
            "contract_id":    self.contract_id,
            "action":         self.action,
            "success":        self.success,
            "state":          self.state,
            "reason":         self.reason,
            "settled_at":     self.settled_at,
            "outputs":        [o.to_dict() for o in self.outputs],
            "outputs_digest": self.outputs_digest,
            "retained":       self.retained,
            "error_kind":     self.error_kind,
        }


class SettlementEngine:
    """
    Booking-layer facade over the escrow and channel state machines.

    Keeps every SettlementRecord it produced for get_settlement_stats().
    """

    def __init__(self, config: Optional[SettlementConfig] = None):
        """
        Args:
            config: Defaults for timeouts and minimum amounts.
                    SettlementConfig() when omitted.
        """
        self.config = config or SettlementConfig()
        self.records: List[SettlementRecord] = []

    # ── Opening ───────────────────────────────────────────────

    def open_escrow(
        self,
        owner_key:        str,
        counterparty_key: str,
        deposit_amount:   int,
        rental_fee:       int,
        current_height:   int,
        rental_token_ref: str = "",
        timeout_height:   Optional[int] = None,
    ) -> EscrowStateMachine:
        """
        Create an escrow for a confirmed booking.

        timeout_height defaults to current_height + config.escrow_timeout_blocks.
        Raises ValidationError if total is below config.min_escrow_amount.
        """
        validate_amount(current_height, "current_height")
        if timeout_height is None:
            timeout_height = current_height + self.config.escrow_timeout_blocks

        contract = EscrowContract.create(
            owner_key=        owner_key,
            counterparty_key= counterparty_key,
            deposit_amount=   deposit_amount,
            rental_fee=       rental_fee,
            timeout_height=   timeout_height,
            rental_token_ref= rental_token_ref,
        )
        if contract.total < self.config.min_escrow_amount:
            raise ValidationError(
                "Escrow total below minimum",
                {"total": contract.total, "minimum": self.config.min_escrow_amount},
            )
        logger.info(
            "escrow %s opened: total=%d timeout_height=%d ref=%s",
            contract.contract_id, contract.total, timeout_height, rental_token_ref,
        )
        return EscrowStateMachine(contract)

    def open_channel(
        self,
        owner_key:        str,
        counterparty_key: str,
        capacity:         int,
        dispute_timeout:  Optional[int] = None,
        ledger_path:      Optional[Union[str, Path]] = None,
    ) -> Tuple[PaymentChannelStateMachine, OffChainChannelLedger]:
        """Open a channel and its off-chain update ledger."""
        channel = PaymentChannel.open(
            owner_key=        owner_key,
            counterparty_key= counterparty_key,
            capacity=         capacity,
            dispute_timeout=  (
                self.config.dispute_timeout if dispute_timeout is None else dispute_timeout
            ),
        )
        ledger = OffChainChannelLedger.for_channel(channel, ledger_path=ledger_path)
        logger.info(
            "channel %s opened: capacity=%d dispute_timeout=%d",
            channel.channel_id, channel.capacity, channel.dispute_timeout,
        )
        return PaymentChannelStateMachine(channel), ledger

    def open_streaming_rental(
        self,
        owner_key:        str,
        counterparty_key: str,
        hourly_rate:      int,
        max_hours:        int,
        deposit_amount:   int,
        dispute_timeout:  Optional[int] = None,
        ledger_path:      Optional[Union[str, Path]] = None,
    ) -> Tuple[PaymentChannelStateMachine, OffChainChannelLedger]:
        """Channel sized for a time-based rental: hourly_rate * max_hours + deposit_amount."""
        validate_amount(hourly_rate, "hourly_rate")
        validate_amount(max_hours, "max_hours")
        validate_amount(deposit_amount, "deposit_amount")
        return self.open_channel(
            owner_key,
            counterparty_key,
            hourly_rate * max_hours + deposit_amount,
            dispute_timeout=dispute_timeout,
            ledger_path=ledger_path,
        )

    # ── Escrow ────────────────────────────────────────────────

    def record_funding(self, machine: EscrowStateMachine) -> SettlementRecord:
        """The ledger confirmed the deposit: CREATED → FUNDED."""
        return self._attempt(machine, "fund", machine.fund)

    def activate(self, machine: EscrowStateMachine, counterparty_sig: str) -> SettlementRecord:
        return self._attempt(machine, "activate", lambda: machine.activate(counterparty_sig))

    def release(
        self,
        machine:          EscrowStateMachine,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(
            machine, "release",
            lambda: machine.release(owner_sig, counterparty_sig, ctx),
        )

    def timeout(
        self,
        machine:   EscrowStateMachine,
        owner_sig: str,
        ctx:       LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(machine, "timeout", lambda: machine.timeout(owner_sig, ctx))

    def refund(
        self,
        machine:          EscrowStateMachine,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(
            machine, "refund",
            lambda: machine.refund(owner_sig, counterparty_sig, ctx),
        )

    def submit_proposal(
        self,
        machine:  EscrowStateMachine,
        proposal: ReleaseProposal,
        ctx:      LedgerContext,
    ) -> SettlementRecord:
        """Submit a READY ReleaseProposal through the matching escrow transition."""
        if proposal.release_type == ReleaseType.FULL_TO_OWNER:
            action = "timeout"
        elif proposal.release_type == ReleaseType.FULL_TO_COUNTERPARTY:
            action = "refund"
        else:
            action = "release"

        def run() -> EscrowOutcome:
            owner_sig, counterparty_sig = proposal.signatures()
            if action == "timeout":
                return machine.timeout(owner_sig, ctx)
            if action == "refund":
                return machine.refund(owner_sig, counterparty_sig, ctx)
            return machine.release(owner_sig, counterparty_sig, ctx)

        return self._attempt(machine, action, run)

    # ── Channel ───────────────────────────────────────────────

    def settle_channel_update(
        self,
        machine: PaymentChannelStateMachine,
        ledger:  OffChainChannelLedger,
        ctx:     Optional[LedgerContext] = None,
    ) -> SettlementRecord:
        """Submit the off-chain ledger's latest update on-chain."""

        def run() -> ChannelOutcome:
            latest = ledger.get_latest_state()
            if latest is None:
                raise SequenceViolationError(
                    "No off-chain update to settle",
                    {"channel_id": ledger.channel_id},
                )
            return machine.update(
                latest.owner_balance,
                latest.counterparty_balance,
                latest.sequence,
                latest.owner_sig,
                latest.counterparty_sig,
                ctx,
            )

        return self._attempt(machine, "update", run)

    def cooperative_close(
        self,
        machine:          PaymentChannelStateMachine,
        owner_sig:        str,
        counterparty_sig: str,
        ctx:              LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(
            machine, "cooperative_close",
            lambda: machine.cooperative_close(owner_sig, counterparty_sig, ctx),
        )

    def initiate_close(
        self,
        machine:       PaymentChannelStateMachine,
        initiator_sig: str,
        is_owner:      bool,
        ctx:           LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(
            machine, "initiate_close",
            lambda: machine.initiate_close(initiator_sig, is_owner, ctx),
        )

    def finalize_close(
        self,
        machine: PaymentChannelStateMachine,
        sig:     str,
        ctx:     LedgerContext,
    ) -> SettlementRecord:
        return self._attempt(
            machine, "finalize_close",
            lambda: machine.finalize_close(sig, ctx),
        )

    # ── Stats ─────────────────────────────────────────────────

    def get_settlement_stats(self) -> dict:
        """
        Returns:
            Dict with attempt counts, failures by error kind, and value paid out
        """
        stats = {
            "total":       len(self.records),
            "succeeded":   0,
            "failed":      0,
            "by_kind":     {},
            "distributed": 0,
        }
        for record in self.records:
            if record.success:
                stats["succeeded"] += 1
                stats["distributed"] += sum(o.amount for o in record.outputs)
            else:
                stats["failed"] += 1
                stats["by_kind"][record.error_kind] = (
                    stats["by_kind"].get(record.error_kind, 0) + 1
                )
        return stats

    # ── Internal ──────────────────────────────────────────────

    def _attempt(
        self,
        machine: Union[EscrowStateMachine, PaymentChannelStateMachine],
        action:  str,
        run:     Callable[[], Outcome],
    ) -> SettlementRecord:
        contract_id = _contract_id(machine)
        try:
            outcome = run()
        except RentSettleError as exc:
            record = SettlementRecord(
                settlement_id= f"settlement-{uuid.uuid4()}",
                contract_id=   contract_id,
                action=        action,
                success=       False,
                state=         machine.state.value,
                reason=        f"settlement attempt failed: {exc.kind}",
                settled_at=    utc_timestamp(),
                error_kind=    exc.kind,
            )
            logger.warning("%s %s: %s (%s)", contract_id, action, record.reason, exc)
        else:
            record = SettlementRecord(
                settlement_id=  f"settlement-{uuid.uuid4()}",
                contract_id=    contract_id,
                action=         action,
                success=        True,
                state=          outcome.state.value,
                reason=         f"{action} accepted",
                settled_at=     utc_timestamp(),
                outputs=        outcome.outputs,
                outputs_digest= outcome.outputs_digest,
                retained=       getattr(outcome, "retained", 0),
            )
        self.records.append(record)
        return record


def _contract_id(machine: Union[EscrowStateMachine, PaymentChannelStateMachine]) -> str:
    if isinstance(machine, EscrowStateMachine):
        return machine.contract.contract_id
    return machine.channel.channel_id
