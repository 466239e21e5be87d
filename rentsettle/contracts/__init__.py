"""
RentSettle Contracts

Escrow and payment-channel contracts as immutable values. Transition
functions take a contract plus signatures and a LedgerContext and return
an outcome carrying the NEW contract; the input is never modified.
"""

from rentsettle.contracts.channel import PaymentChannel, PaymentChannelStateMachine
from rentsettle.contracts.escrow import EscrowContract, EscrowStateMachine

__all__ = [
    "EscrowContract",
    "EscrowStateMachine",
    "PaymentChannel",
    "PaymentChannelStateMachine",
]
