# backend/meetbook/services/slot_registry.py
"""
Slot Registry for the Meetbook booking core.

Tracks partner availability windows and arbitrates exclusive claims on
them. The exclusivity gate (``try_hold``) runs under the partner's lock row,
so the overlap check and the claim happen in one serialized step: of two
concurrent requests for overlapping windows of one partner, at most one
gets a hold.

``try_hold``, ``confirm`` and ``release`` work inside the caller's
transaction so a hold and the booking that owns it commit or roll back
together. The partner-facing slot management methods own their
transactions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
import logging
from typing import List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.constants import MAX_NOTE_LENGTH
from ..core.enums import SlotStatus
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    RepositoryException,
    SlotHoldExpiredException,
    ValidationException,
)
from ..core.ulid_helper import generate_ulid
from ..models.availability import AvailabilitySlot
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.slot_repository import SlotRepository
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldToken:
    """Proof of an exclusive, expiring claim on a partner's time window."""

    token: str
    slot_id: str
    partner_id: str
    expires_at: datetime


@dataclass(frozen=True)
class HoldRejection:
    """The window overlaps an existing claim. An expected outcome, not a fault."""

    code: str = "SLOT_NOT_AVAILABLE"
    conflicting_slot_ids: Tuple[str, ...] = field(default_factory=tuple)


HoldResult = Union[HoldToken, HoldRejection]


def validate_time_range(start_time: time, end_time: time) -> None:
    if end_time <= start_time:
        raise ValidationException(
            "End time must be after start time",
            code="INVALID_TIME_RANGE",
            details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )


class SlotRegistry(BaseService):
    """Exclusivity arbiter and partner availability manager."""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        *,
        slot_repository: Optional[SlotRepository] = None,
        hold_ttl: Optional[timedelta] = None,
        require_declared_availability: Optional[bool] = None,
    ) -> None:
        super().__init__(db, clock)
        self.repository = slot_repository or RepositoryFactory.create_slot_repository(db)
        self.hold_ttl = hold_ttl or timedelta(minutes=settings.slot_hold_ttl_minutes)
        self.require_declared_availability = (
            settings.require_declared_availability
            if require_declared_availability is None
            else require_declared_availability
        )

    # Exclusivity gate

    @BaseService.measure_operation("slots.try_hold")
    def try_hold(
        self,
        partner_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
    ) -> HoldResult:
        """
        Atomically check for overlapping claims and take a HELD claim.

        Returns a HoldToken on success or a HoldRejection when a HELD/BOOKED
        slot of the partner overlaps the window. Expired holds do not block.
        """
        validate_time_range(start_time, end_time)
        now = self.clock.now()

        self.repository.lock_partner(partner_id)

        conflicts = self.repository.find_overlapping_claims(
            partner_id, slot_date, start_time, end_time, now
        )
        if conflicts:
            prometheus_metrics.record_slot_hold("rejected")
            self.logger.info(
                "Slot hold rejected: overlap",
                extra={
                    "partner_id": partner_id,
                    "slot_date": slot_date.isoformat(),
                    "conflicts": [slot.id for slot in conflicts],
                },
            )
            return HoldRejection(conflicting_slot_ids=tuple(slot.id for slot in conflicts))

        token = generate_ulid()
        expires_at = now + self.hold_ttl
        window = self.repository.find_open_window(partner_id, slot_date, start_time, end_time)

        if window is not None and window.start_time == start_time and window.end_time == end_time:
            if not self.repository.mark_held(window.id, token, expires_at, now):
                # Cannot happen under the partner lock; treat as a lost race
                prometheus_metrics.record_slot_hold("rejected")
                return HoldRejection(conflicting_slot_ids=(window.id,))
            slot_id = window.id
        elif window is None and self.require_declared_availability:
            prometheus_metrics.record_slot_hold("rejected")
            self.logger.info(
                "Slot hold rejected: outside declared availability",
                extra={"partner_id": partner_id, "slot_date": slot_date.isoformat()},
            )
            return HoldRejection()
        else:
            slot = self.repository.create(
                partner_id=partner_id,
                slot_date=slot_date,
                start_time=start_time,
                end_time=end_time,
                status=SlotStatus.HELD.value,
                hold_token=token,
                hold_expires_at=expires_at,
                created_at=now,
            )
            slot_id = slot.id

        prometheus_metrics.record_slot_hold("held")
        self.logger.info(
            "Slot held",
            extra={
                "partner_id": partner_id,
                "slot_id": slot_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        return HoldToken(token=token, slot_id=slot_id, partner_id=partner_id, expires_at=expires_at)

    def confirm(self, hold: Union[HoldToken, str]) -> AvailabilitySlot:
        """
        Promote a live hold to BOOKED.

        Fails closed: an expired or released hold raises SlotHoldExpiredException
        and is never re-locked.
        """
        token = hold.token if isinstance(hold, HoldToken) else hold
        now = self.clock.now()
        slot = self.repository.get_by_hold_token(token)

        if slot is not None and slot.status == SlotStatus.BOOKED.value:
            return slot

        if slot is None or not self.repository.confirm_hold(token, now):
            slot_id = slot.id if slot is not None else (
                hold.slot_id if isinstance(hold, HoldToken) else ""
            )
            if slot is not None and slot.hold_expired(now):
                self.repository.revert_expired_hold(slot.id, now)
            self.logger.info("Slot confirm after hold expiry", extra={"slot_id": slot_id})
            raise SlotHoldExpiredException(slot_id)

        self.repository.refresh(slot)
        return slot

    def release(
        self, hold_or_slot_id: Union[HoldToken, str], hold_token: Optional[str] = None
    ) -> bool:
        """
        Demote a HELD/BOOKED slot to OPEN.

        With a HoldToken (or an explicit ``hold_token``) only that claim is
        released; a slot re-held by someone else after expiry stays claimed.
        Returns False if nothing changed.
        """
        if isinstance(hold_or_slot_id, HoldToken):
            slot_id, hold_token = hold_or_slot_id.slot_id, hold_or_slot_id.token
        else:
            slot_id = hold_or_slot_id
        released = self.repository.release(slot_id, self.clock.now(), hold_token)
        if released:
            self.logger.info("Slot released", extra={"slot_id": slot_id})
        return released

    def get_expired_holds(self, limit: int = 100) -> List[AvailabilitySlot]:
        return self.repository.get_expired_holds(self.clock.now(), limit)

    def revert_expired_hold(self, slot_id: str) -> bool:
        reverted = self.repository.revert_expired_hold(slot_id, self.clock.now())
        if reverted:
            prometheus_metrics.inc_slot_holds_expired()
        return reverted

    # Partner availability management

    def _validate_note(self, note: Optional[str]) -> Optional[str]:
        if note is None:
            return None
        note = note.strip()
        if len(note) > MAX_NOTE_LENGTH:
            raise ValidationException(
                f"Note cannot exceed {MAX_NOTE_LENGTH} characters", code="NOTE_TOO_LONG"
            )
        return note or None

    def _get_owned_slot(self, slot_id: str, partner_id: str) -> AvailabilitySlot:
        slot = self.repository.get_by_id(slot_id)
        if slot is None:
            raise NotFoundException("Slot not found", details={"slot_id": slot_id})
        if slot.partner_id != partner_id:
            raise ForbiddenException(
                "You can only manage your own availability", code="NOT_ALLOWED"
            )
        return slot

    def _ensure_not_claimed(self, slot: AvailabilitySlot) -> None:
        if slot.status != SlotStatus.OPEN.value and not slot.hold_expired(self.clock.now()):
            raise BusinessRuleException(
                "Slot has an active hold or booking and cannot be changed",
                code="SLOT_IN_USE",
                details={"slot_id": slot.id, "status": slot.status},
            )

    @BaseService.measure_operation("slots.create")
    def create_slot(
        self,
        partner_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        note: Optional[str] = None,
    ) -> AvailabilitySlot:
        """Declare an OPEN availability window."""
        validate_time_range(start_time, end_time)
        if slot_date < self.clock.now().date():
            raise ValidationException(
                "Availability cannot be declared in the past", code="DATE_IN_PAST"
            )
        note = self._validate_note(note)

        with self.transaction():
            self.repository.lock_partner(partner_id)
            overlapping = self.repository.find_overlapping(
                partner_id, slot_date, start_time, end_time
            )
            if overlapping:
                raise ConflictException(
                    "Slot overlaps existing availability",
                    code="SLOT_OVERLAP",
                    details={"conflicting_slot_ids": [slot.id for slot in overlapping]},
                )
            slot = self.repository.create(
                partner_id=partner_id,
                slot_date=slot_date,
                start_time=start_time,
                end_time=end_time,
                status=SlotStatus.OPEN.value,
                note=note,
                created_at=self.clock.now(),
            )

        self.log_operation("slot_created", slot_id=slot.id, partner_id=partner_id)
        return slot

    @BaseService.measure_operation("slots.update")
    def update_slot(
        self,
        slot_id: str,
        partner_id: str,
        *,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
        note: Optional[str] = None,
    ) -> AvailabilitySlot:
        with self.transaction():
            self.repository.lock_partner(partner_id)
            slot = self._get_owned_slot(slot_id, partner_id)
            self._ensure_not_claimed(slot)

            new_start = start_time or slot.start_time
            new_end = end_time or slot.end_time
            validate_time_range(new_start, new_end)
            if (new_start, new_end) != (slot.start_time, slot.end_time):
                overlapping = self.repository.find_overlapping(
                    partner_id, slot.slot_date, new_start, new_end, exclude_slot_id=slot.id
                )
                if overlapping:
                    raise ConflictException(
                        "Slot overlaps existing availability",
                        code="SLOT_OVERLAP",
                        details={"conflicting_slot_ids": [s.id for s in overlapping]},
                    )

            values = {"start_time": new_start, "end_time": new_end, "updated_at": self.clock.now()}
            if note is not None:
                values["note"] = self._validate_note(note)
            updated = self.repository.update(slot.id, **values)

        return updated or slot

    @BaseService.measure_operation("slots.delete")
    def delete_slot(self, slot_id: str, partner_id: str) -> None:
        with self.transaction():
            self.repository.lock_partner(partner_id)
            slot = self._get_owned_slot(slot_id, partner_id)
            self._ensure_not_claimed(slot)
            try:
                self.repository.delete(slot.id)
            except RepositoryException as exc:
                raise BusinessRuleException(
                    "Slot is referenced by booking history and cannot be deleted",
                    code="SLOT_IN_USE",
                    details={"slot_id": slot_id},
                ) from exc
        self.log_operation("slot_deleted", slot_id=slot_id, partner_id=partner_id)

    def list_slots(
        self,
        partner_id: str,
        start_date: date,
        end_date: date,
        status: Optional[SlotStatus] = None,
    ) -> List[AvailabilitySlot]:
        if end_date < start_date:
            raise ValidationException(
                "End date must not be before start date", code="INVALID_DATE_RANGE"
            )
        return self.repository.get_partner_slots(partner_id, start_date, end_date, status)
