# backend/meetbook/schemas/__init__.py
"""
Pydantic schemas for the Meetbook booking core.

Request models reject unknown fields; response models read straight from
the ORM rows.
"""

# Partner availability
from .availability import SlotCreate, SlotResponse, SlotUpdate

# Bookings, listings and admin views
from .booking import (
    AdminOverrideRequest,
    AdminStatsResponse,
    BookingHistoryEntry,
    BookingListResponse,
    BookingResponse,
    BookingSearchParams,
    CreateBookingRequest,
    PriceBreakdownResponse,
    TransitionBookingRequest,
)

__all__ = [
    "SlotCreate",
    "SlotUpdate",
    "SlotResponse",
    "CreateBookingRequest",
    "TransitionBookingRequest",
    "AdminOverrideRequest",
    "BookingSearchParams",
    "PriceBreakdownResponse",
    "BookingResponse",
    "BookingHistoryEntry",
    "BookingListResponse",
    "AdminStatsResponse",
]
