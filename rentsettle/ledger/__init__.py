"""
RentSettle Ledger - append-only log of off-chain channel updates.
"""

from rentsettle.ledger.channel_ledger import ChannelUpdate, OffChainChannelLedger

__all__ = ["ChannelUpdate", "OffChainChannelLedger"]
