"""
rentsettle/contracts/release.py

Off-chain escrow helpers for the booking layer.

    ReleaseProposal  — collect owner + counterparty signatures before
                       submitting a two-party escrow transition
    escrow_status()  — human-facing summary of where an escrow stands
    is_timed_out()   — whether timeout() is eligible at a ledger clock

None of these change contract state. They prepare inputs for
rentsettle.contracts.escrow.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from rentsettle.contracts.escrow import EscrowContract, EscrowState
from rentsettle.core.exceptions import BadSignatureError, ValidationError
from rentsettle.core.outputs import OutputCommitment
from rentsettle.core.quorum import Signer, SignatureQuorum


class ReleaseType(Enum):
    STANDARD             = "standard"              # release()
    FULL_TO_OWNER        = "full_to_owner"         # timeout()
    FULL_TO_COUNTERPARTY = "full_to_counterparty"  # refund()


class ProposalStatus(Enum):
    PENDING_SIGNATURES = "pending_signatures"
    READY              = "ready"


@dataclass
class ReleaseProposal:
    """
    Signature collection for one escrow payout.

    Each add_signature() is checked immediately against the exact message
    the escrow transition will verify, so a READY proposal is known to pass
    the quorum check (as long as the contract has not moved on).
    """
    contract:               EscrowContract
    release_type:           ReleaseType    = ReleaseType.STANDARD
    owner_signature:        Optional[str]  = None
    counterparty_signature: Optional[str]  = None
    status:                 ProposalStatus = ProposalStatus.PENDING_SIGNATURES

    # ── Breakdown ─────────────────────────────────────────────

    def commitment(self) -> OutputCommitment:
        if self.release_type == ReleaseType.FULL_TO_OWNER:
            return self.contract.timeout_commitment()
        if self.release_type == ReleaseType.FULL_TO_COUNTERPARTY:
            return self.contract.refund_commitment()
        return self.contract.release_commitment()

    def message(self) -> Dict[str, Any]:
        if self.release_type == ReleaseType.FULL_TO_OWNER:
            return self.contract.timeout_message()
        if self.release_type == ReleaseType.FULL_TO_COUNTERPARTY:
            return self.contract.refund_message()
        return self.contract.release_message()

    def breakdown(self) -> Dict[str, int]:
        """{"to_owner": n, "to_counterparty": m} for this release type."""
        to_owner = to_counterparty = 0
        for output in self.commitment().outputs:
            if output.beneficiary == self.contract.owner_key:
                to_owner += output.amount
            else:
                to_counterparty += output.amount
        return {"to_owner": to_owner, "to_counterparty": to_counterparty}

    # ── Signatures ────────────────────────────────────────────

    def required_roles(self) -> Tuple[str, ...]:
        if self.release_type == ReleaseType.FULL_TO_OWNER:
            return ("owner",)
        return ("owner", "counterparty")

    def add_signature(self, signer_key: str, signature: str) -> "ReleaseProposal":
        """
        Attach one party's signature. Returns self.

        Raises:
            ValidationError   — signer_key is not a party to this escrow
            BadSignatureError — signature does not verify over message()
        """
        if signer_key == self.contract.owner_key:
            role = "owner"
        elif signer_key == self.contract.counterparty_key:
            role = "counterparty"
        else:
            raise ValidationError(
                "Signer is not a party to this escrow",
                {"contract_id": self.contract.contract_id},
            )
        SignatureQuorum(self.message()).require([Signer(role, signer_key, signature)])

        if role == "owner":
            self.owner_signature = signature
        else:
            self.counterparty_signature = signature

        if self.can_release():
            self.status = ProposalStatus.READY
        return self

    def can_release(self) -> bool:
        have = {
            "owner":        bool(self.owner_signature),
            "counterparty": bool(self.counterparty_signature),
        }
        return all(have[r] for r in self.required_roles())

    def missing_roles(self) -> List[str]:
        have = {"owner": self.owner_signature, "counterparty": self.counterparty_signature}
        return [r for r in self.required_roles() if not have[r]]

    def signatures(self) -> Tuple[Optional[str], Optional[str]]:
        """(owner_sig, counterparty_sig). Raises BadSignatureError until READY."""
        if not self.can_release():
            raise BadSignatureError(
                "Cannot release: missing signatures",
                {"missing": ", ".join(self.missing_roles())},
            )
        return self.owner_signature, self.counterparty_signature


# ─────────────────────────────────────────────────────────────
# Status summary
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EscrowStatus:
    label:       str
    can_release: bool
    waiting_for: Tuple[str, ...]
    message:     str


_STATUS: Dict[EscrowState, EscrowStatus] = {
    EscrowState.CREATED: EscrowStatus(
        "Awaiting Funding", False, ("funding",),
        "Escrow created. Waiting for renter to fund.",
    ),
    EscrowState.FUNDED: EscrowStatus(
        "Funded", False, ("rental_start",),
        "Escrow funded. Rental period has not started.",
    ),
    EscrowState.ACTIVE: EscrowStatus(
        "Active", True, (),
        "Rental in progress. Both parties can sign to release.",
    ),
    EscrowState.RELEASED: EscrowStatus(
        "Released", False, (),
        "Escrow has been released to both parties.",
    ),
    EscrowState.DISPUTED: EscrowStatus(
        "Disputed", False, (),
        "Timeout reached. Full amount paid to owner.",
    ),
    EscrowState.REFUNDED: EscrowStatus(
        "Refunded", False, (),
        "Rental cancelled before pickup. Full amount returned to renter.",
    ),
}


def escrow_status(contract: EscrowContract) -> EscrowStatus:
    return _STATUS[contract.state]


def is_timed_out(contract: EscrowContract, clock: int) -> bool:
    """True iff timeout() would pass its clock check (inclusive bound) and state check."""
    return contract.state == EscrowState.ACTIVE and clock >= contract.timeout_height
