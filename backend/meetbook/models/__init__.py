"""
Database models for the Meetbook booking core.

- Booking and its status history
- Partner availability slots and the per-partner slot lock
- Escrow records and the ledger instructions issued for them
"""

from .availability import AvailabilitySlot, PartnerSlotLock
from .booking import Booking, BookingStatusHistory
from .escrow import EscrowRecord, LedgerInstruction

__all__ = [
    "AvailabilitySlot",
    "Booking",
    "BookingStatusHistory",
    "EscrowRecord",
    "LedgerInstruction",
    "PartnerSlotLock",
]
