# backend/meetbook/schemas/booking.py
"""
Booking schemas for the Meetbook booking core.

Request DTOs validate shape only (formats, lengths, enums). Business rules
such as minimum hours or the notice window stay in the services, which know
the clock and the settings.
"""

from datetime import date, datetime, time
import re
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from ..core.constants import MAX_NOTE_LENGTH, MAX_PAGE_SIZE, MAX_REASON_LENGTH
from ..core.enums import ActorRole, BookingEvent, BookingStatus
from ._strict_base import StrictModel, StrictRequestModel

DATE_ONLY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _ensure_date_only(value: object, field_name: str) -> object:
    if isinstance(value, str):
        candidate = value.strip()
        if not DATE_ONLY_REGEX.fullmatch(candidate):
            raise ValueError(f"{field_name} must be a YYYY-MM-DD date-only string")
        return candidate
    return value


def _parse_hhmm(value: object) -> object:
    if isinstance(value, str):
        try:
            hour, minute = value.split(":")
            return time(int(hour), int(minute))
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid time format: {value}. Expected HH:MM format.")
    return value


class CreateBookingRequest(StrictRequestModel):
    """Request to book a partner's time window."""

    partner_id: str = Field(..., min_length=1, max_length=64)
    service_type: str = Field(..., min_length=1, max_length=50)
    booking_date: date
    start_time: time
    end_time: time
    meeting_location: Optional[str] = Field(None, max_length=500)
    meeting_lat: Optional[float] = Field(None, ge=-90, le=90)
    meeting_lng: Optional[float] = Field(None, ge=-180, le=180)
    requester_note: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)

    @field_validator("booking_date", mode="before")
    @classmethod
    def _enforce_date_only(cls, v: object) -> object:
        return _ensure_date_only(v, "booking_date")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time_string(cls, v: object) -> object:
        return _parse_hhmm(v)

    @model_validator(mode="after")
    def validate_window(self) -> "CreateBookingRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if (self.meeting_lat is None) != (self.meeting_lng is None):
            raise ValueError("meeting_lat and meeting_lng must be given together")
        return self


class TransitionBookingRequest(StrictRequestModel):
    event: BookingEvent
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)
    confirmed_by_participant: bool = False

    @model_validator(mode="after")
    def require_cancel_reason(self) -> "TransitionBookingRequest":
        if self.event == BookingEvent.CANCEL and not self.reason:
            raise ValueError("reason is required to cancel a booking")
        return self


class AdminOverrideRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, min_length=1, max_length=MAX_REASON_LENGTH)
    admin_note: Optional[str] = Field(None, max_length=MAX_NOTE_LENGTH)

    @model_validator(mode="after")
    def require_something(self) -> "AdminOverrideRequest":
        if self.reason is None and self.admin_note is None:
            raise ValueError("Provide a reason or an admin_note")
        return self


class BookingSearchParams(StrictRequestModel):
    """Admin listing filters."""

    statuses: Optional[List[BookingStatus]] = None
    requester_id: Optional[str] = None
    partner_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    code_query: Optional[str] = Field(None, max_length=20)
    limit: int = Field(20, ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(0, ge=0)


class PriceBreakdownResponse(StrictModel):
    hourly_rate: int = Field(ge=0)
    requested_hours: float = Field(gt=0)
    minimum_hours: float = Field(ge=1)
    actual_hours: float = Field(gt=0)
    fee_rate: float = Field(ge=0, lt=1)
    subtotal: int = Field(ge=0)
    fee: int = Field(ge=0)
    total: int = Field(ge=0)
    minimum_applied: bool


class BookingResponse(StrictModel):
    """Booking as returned to participants and admins."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    code: str
    requester_id: str
    partner_id: str
    service_type: str
    booking_date: date
    start_time: time
    end_time: time
    meeting_location: Optional[str] = None
    meeting_lat: Optional[float] = None
    meeting_lng: Optional[float] = None
    hourly_rate: int
    requested_hours: float
    actual_hours: float
    minimum_applied: bool
    subtotal: int
    fee: int
    total: int
    currency: str
    status: BookingStatus
    cancellation_reason: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None


class BookingHistoryEntry(StrictModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    sequence: int
    from_status: Optional[BookingStatus] = None
    to_status: BookingStatus
    event: str
    actor_id: str
    actor_role: ActorRole
    reason: Optional[str] = None
    created_at: datetime


class BookingListResponse(StrictModel):
    items: List[BookingResponse]
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def from_page(cls, page: Any) -> "BookingListResponse":
        return cls(
            items=[BookingResponse.model_validate(item) for item in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            has_more=page.has_more,
        )


class AdminStatsResponse(StrictModel):
    total_bookings: int
    by_status: Dict[BookingStatus, int]
    created_today: int
    monthly_revenue: int
    escrow_needing_attention: int


__all__ = [
    "AdminOverrideRequest",
    "AdminStatsResponse",
    "BookingHistoryEntry",
    "BookingListResponse",
    "BookingResponse",
    "BookingSearchParams",
    "CreateBookingRequest",
    "PriceBreakdownResponse",
    "TransitionBookingRequest",
]
