# backend/meetbook/repositories/__init__.py
"""
Repository layer for the Meetbook booking core.

Repositories own all SQL. They flush but never commit; services decide
where a transaction begins and ends.

Usage:
    from meetbook.repositories import RepositoryFactory

    bookings = RepositoryFactory.create_booking_repository(db)
    booking = bookings.get_by_code("BK-AB12CD34")
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .escrow_repository import EscrowRepository
from .factory import RepositoryFactory
from .slot_repository import SlotRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "EscrowRepository",
    "RepositoryFactory",
    "SlotRepository",
]
