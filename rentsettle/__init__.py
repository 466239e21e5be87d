"""
rentsettle/__init__.py

RentSettle: escrow and payment-channel settlement for peer-to-peer rentals.

Two contract kinds settle on an external ledger:

    EscrowStateMachine          deposit + fee held until release/timeout/refund
    PaymentChannelStateMachine  streaming payments settled by latest sequence

Every value-moving transition needs the right signatures over one
canonical message AND a ledger-proposed output list that matches the
contract's own commitment. Off-chain channel updates are kept in an
OffChainChannelLedger until one of them is settled.
"""

__version__ = "0.1.0"

from rentsettle.contracts.channel import (
    ChannelState,
    PaymentChannel,
    PaymentChannelStateMachine,
)
from rentsettle.contracts.escrow import (
    EscrowContract,
    EscrowState,
    EscrowStateMachine,
)
from rentsettle.contracts.release import ReleaseProposal, ReleaseType, escrow_status
from rentsettle.core.config import SettlementConfig
from rentsettle.core.crypto import Ed25519KeyManager
from rentsettle.core.exceptions import (
    BadSignatureError,
    InsufficientChannelBalanceError,
    InvalidStateError,
    OutputMismatchError,
    RentSettleError,
    SequenceViolationError,
    TimeoutNotReachedError,
)
from rentsettle.core.outputs import LedgerContext, Output, OutputCommitment, commit_outputs
from rentsettle.core.quorum import SignatureQuorum, sign_message
from rentsettle.ledger.channel_ledger import (
    ChannelUpdate,
    LockedChannelLedger,
    OffChainChannelLedger,
)
from rentsettle.settlement.engine import SettlementEngine, SettlementRecord

__all__ = [
    # Contracts
    "EscrowContract",
    "EscrowState",
    "EscrowStateMachine",
    "PaymentChannel",
    "ChannelState",
    "PaymentChannelStateMachine",
    "ReleaseProposal",
    "ReleaseType",
    "escrow_status",
    # Off-chain
    "ChannelUpdate",
    "OffChainChannelLedger",
    "LockedChannelLedger",
    # Settlement
    "SettlementEngine",
    "SettlementRecord",
    "SettlementConfig",
    # Primitives
    "Ed25519KeyManager",
    "LedgerContext",
    "Output",
    "OutputCommitment",
    "SignatureQuorum",
    "commit_outputs",
    "sign_message",
    # Errors
    "RentSettleError",
    "InvalidStateError",
    "BadSignatureError",
    "OutputMismatchError",
    "SequenceViolationError",
    "InsufficientChannelBalanceError",
    "TimeoutNotReachedError",
]
