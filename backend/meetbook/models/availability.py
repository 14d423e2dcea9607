# backend/meetbook/models/availability.py
"""
Partner availability models.

An AvailabilitySlot is a time window on one date. Partners declare OPEN
windows; the slot registry marks windows HELD while a booking waits for
confirmation and BOOKED once the partner confirms. Overlapping slots of the
same partner are never HELD/BOOKED at the same time.

PartnerSlotLock is one row per partner. The registry locks it before any
check-and-set on that partner's slots, which serializes concurrent holds for
one partner without blocking anyone else.
"""

from datetime import date, datetime
from typing import Any, Optional, cast

from sqlalchemy import CheckConstraint, Column, Date, DateTime, Index, Integer, String, Text, Time
import ulid

from ..core.clock import combine_utc, ensure_utc
from ..core.enums import SlotStatus
from ..database import Base


class AvailabilitySlot(Base):
    """A partner time window and its exclusivity status."""

    __tablename__ = "availability_slots"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    partner_id = Column(String(64), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String(10), nullable=False, default=SlotStatus.OPEN.value)
    note = Column(Text, nullable=True)

    # Set while HELD; a token proves ownership of the hold
    hold_token = Column(String(26), nullable=True, unique=True)
    hold_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'HELD', 'BOOKED')", name="ck_availability_slots_status"
        ),
        CheckConstraint("end_time > start_time", name="check_slot_time_order"),
        Index("ix_availability_partner_date_status", "partner_id", "slot_date", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<AvailabilitySlot {self.id}: partner={self.partner_id}, date={self.slot_date}, "
            f"time={self.start_time}-{self.end_time}, status={self.status}>"
        )

    @property
    def starts_at(self) -> datetime:
        return combine_utc(cast(date, self.slot_date), self.start_time)

    def hold_expired(self, now: datetime) -> bool:
        if self.status != SlotStatus.HELD.value or self.hold_expires_at is None:
            return False
        return ensure_utc(cast(datetime, self.hold_expires_at)) <= now

    def to_dict(self) -> dict[str, Any]:
        expires: Optional[datetime] = self.hold_expires_at
        return {
            "id": self.id,
            "partner_id": self.partner_id,
            "date": self.slot_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "status": self.status,
            "note": self.note,
            "hold_expires_at": expires.isoformat() if expires else None,
        }


class PartnerSlotLock(Base):
    """Per-partner mutex row taken FOR UPDATE by the exclusivity gate."""

    __tablename__ = "partner_slot_locks"

    partner_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<PartnerSlotLock partner={self.partner_id} version={self.version}>"
