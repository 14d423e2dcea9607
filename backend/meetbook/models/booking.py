# backend/meetbook/models/booking.py
"""
Booking model for the Meetbook platform.

Represents a paid, time-boxed meetup between a requester and a partner.
Bookings snapshot everything needed to settle them (hourly rate, fee rate,
computed amounts) so later changes to a partner profile or to platform
settings never alter what was agreed.

Bookings are never deleted. Terminal rows are kept for audit and statistics.
Status only changes through the booking state machine.
"""

from datetime import date, datetime
import logging
from typing import Any, Callable, Optional, cast

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.clock import combine_utc
from ..core.enums import BookingStatus
from ..database import Base

logger = logging.getLogger(__name__)


class Booking(Base):
    """Self-contained booking record between requester and partner."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    code = Column(String(16), nullable=False, unique=True, index=True)

    requester_id = Column(String(64), nullable=False, index=True)
    partner_id = Column(String(64), nullable=False, index=True)
    service_type = Column(String(50), nullable=False)

    booking_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    meeting_location = Column(Text, nullable=True)
    meeting_lat = Column(Float, nullable=True)
    meeting_lng = Column(Float, nullable=True)
    requester_note = Column(Text, nullable=True)

    # Pricing snapshot, whole currency units
    hourly_rate = Column(Integer, nullable=False)
    requested_hours = Column(Numeric(6, 2), nullable=False)
    actual_hours = Column(Numeric(6, 2), nullable=False)
    minimum_applied = Column(Boolean, nullable=False, default=False)
    fee_rate = Column(Numeric(5, 4), nullable=False)
    subtotal = Column(Integer, nullable=False)
    fee = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)

    # Lookup only; slots belong to the partner and are never cascaded from here
    slot_id = Column(String(26), ForeignKey("availability_slots.id"), nullable=True)
    # Which claim on that slot belongs to this booking; slots outlive holds
    slot_hold_token = Column(String(26), nullable=True)

    cancelled_by_id = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    admin_note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)

    slot = relationship("AvailabilitySlot", foreign_keys=[slot_id], lazy="joined")
    escrow = relationship("EscrowRecord", back_populates="booking", uselist=False)
    history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        order_by="BookingStatusHistory.sequence",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'PAID', 'IN_PROGRESS', "
            "'COMPLETED', 'CANCELLED', 'DISPUTED')",
            name="ck_bookings_status",
        ),
        CheckConstraint("end_time > start_time", name="check_time_order"),
        CheckConstraint("hourly_rate >= 0", name="check_rate_non_negative"),
        CheckConstraint("total = subtotal + fee", name="check_total_is_subtotal_plus_fee"),
        CheckConstraint("requester_id <> partner_id", name="check_not_self_booking"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.code}: requester={self.requester_id}, "
            f"partner={self.partner_id}, date={self.booking_date}, "
            f"time={self.start_time}-{self.end_time}, status={self.status}>"
        )

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def starts_at(self) -> datetime:
        return combine_utc(cast(date, self.booking_date), self.start_time)

    @property
    def ends_at(self) -> datetime:
        return combine_utc(cast(date, self.booking_date), self.end_time)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    @property
    def is_participant(self) -> Callable[[str], bool]:
        """Return a helper that checks whether the given user takes part in this booking."""

        def _checker(user_id: str) -> bool:
            return user_id in (self.requester_id, self.partner_id)

        return _checker

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "code": self.code,
            "requester_id": self.requester_id,
            "partner_id": self.partner_id,
            "service_type": self.service_type,
            "booking_date": self.booking_date.isoformat() if self.booking_date else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "meeting_location": self.meeting_location,
            "meeting_lat": self.meeting_lat,
            "meeting_lng": self.meeting_lng,
            "hourly_rate": self.hourly_rate,
            "requested_hours": float(self.requested_hours),
            "actual_hours": float(self.actual_hours),
            "minimum_applied": bool(self.minimum_applied),
            "subtotal": self.subtotal,
            "fee": self.fee,
            "total": self.total,
            "currency": self.currency,
            "status": self.status,
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
            "paid_at": _iso(self.paid_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "disputed_at": _iso(self.disputed_at),
        }


class BookingStatusHistory(Base):
    """Append-only audit trail of booking transitions."""

    __tablename__ = "booking_status_history"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False, index=True)
    # Position within the booking trail; timestamps can tie under a frozen clock
    sequence = Column(Integer, nullable=False, default=1)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    event = Column(String(20), nullable=False)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    booking = relationship("Booking", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<BookingStatusHistory {self.booking_id}: "
            f"{self.from_status}->{self.to_status} via {self.event}>"
        )


Index(
    "ix_booking_partner_status_date",
    Booking.partner_id,
    Booking.status,
    Booking.booking_date,
)
