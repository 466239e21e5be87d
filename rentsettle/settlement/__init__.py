"""
RentSettle Settlement Engine

The booking layer's boundary into the settlement core:
- opens escrows and channels using SettlementConfig defaults
- applies transitions and records each attempt as a SettlementRecord
- never chooses between competing transitions
"""

from rentsettle.settlement.engine import SettlementEngine

__all__ = ["SettlementEngine"]
