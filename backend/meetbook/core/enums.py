# backend/meetbook/core/enums.py
"""
Core enums for the Meetbook booking core.

Statuses are closed sets. Legal movements between booking statuses live in
one table (see services/booking_state_machine.py); nothing else should
assign a status directly.
"""

from enum import Enum


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BOOKING_STATUSES


TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
)


class BookingEvent(str, Enum):
    """Triggers accepted by the booking state machine."""

    CONFIRM = "confirm"
    PAY = "pay"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    DISPUTE = "dispute"


class SlotStatus(str, Enum):
    """Exclusivity status of an availability slot."""

    OPEN = "OPEN"
    HELD = "HELD"
    BOOKED = "BOOKED"


CLAIMED_SLOT_STATUSES = (SlotStatus.HELD, SlotStatus.BOOKED)


class EscrowState(str, Enum):
    """Where the funds of a booking currently sit."""

    NONE = "NONE"
    HELD = "HELD"
    RELEASE_SCHEDULED = "RELEASE_SCHEDULED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class LedgerInstructionKind(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class LedgerInstructionStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ActorRole(str, Enum):
    """Who is asking for a booking transition."""

    REQUESTER = "requester"
    PARTNER = "partner"
    ADMIN = "admin"
    SYSTEM = "system"
