# backend/meetbook/repositories/factory.py
"""
Repository Factory for the Meetbook booking core.

Provides centralized creation of repository instances so services never
construct repositories directly.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session


# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .escrow_repository import EscrowRepository
    from .slot_repository import SlotRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_slot_repository(db: Session) -> "SlotRepository":
        """Create repository for availability slots and partner locks."""
        from .slot_repository import SlotRepository

        return SlotRepository(db)

    @staticmethod
    def create_escrow_repository(db: Session) -> "EscrowRepository":
        """Create repository for escrow records and ledger instructions."""
        from .escrow_repository import EscrowRepository

        return EscrowRepository(db)
