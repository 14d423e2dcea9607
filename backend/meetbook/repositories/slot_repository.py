# backend/meetbook/repositories/slot_repository.py
"""
Slot Repository for the Meetbook booking core.

Data access for partner availability windows and their exclusivity status.
Every status change is a conditional UPDATE so a slot can only move
OPEN -> HELD -> BOOKED (or back to OPEN) from the state the caller observed.
"""

from datetime import date, datetime, time
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, not_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import CLAIMED_SLOT_STATUSES, SlotStatus
from ..core.exceptions import RepositoryException
from ..models.availability import AvailabilitySlot, PartnerSlotLock
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_CLAIMED = [status.value for status in CLAIMED_SLOT_STATUSES]


class SlotRepository(BaseRepository[AvailabilitySlot]):
    """Repository for availability slots and the per-partner lock row."""

    def __init__(self, db: Session):
        super().__init__(db, AvailabilitySlot)

    # Locking

    def lock_partner(self, partner_id: str) -> PartnerSlotLock:
        """
        Take the partner's lock row FOR UPDATE, creating it on first use.

        Held until the surrounding transaction ends. Concurrent holds for the
        same partner queue here; other partners are unaffected.
        """
        try:
            lock = self._select_lock(partner_id)
            if lock is None:
                try:
                    with self.db.begin_nested():
                        self.db.add(PartnerSlotLock(partner_id=partner_id, version=0))
                except IntegrityError:
                    # Another transaction created it first; fall through and wait on it
                    self.logger.debug("Partner lock row for %s created concurrently", partner_id)
                lock = self._select_lock(partner_id)
            if lock is None:
                raise RepositoryException(f"Could not acquire slot lock for partner {partner_id}")
            lock.version = int(lock.version or 0) + 1
            self.db.flush()
            return lock
        except SQLAlchemyError as e:
            self.logger.error(f"Error locking partner {partner_id}: {str(e)}")
            raise RepositoryException(f"Failed to lock partner slots: {str(e)}")

    def _select_lock(self, partner_id: str) -> Optional[PartnerSlotLock]:
        return cast(
            Optional[PartnerSlotLock],
            self.db.query(PartnerSlotLock)
            .filter(PartnerSlotLock.partner_id == partner_id)
            .with_for_update()
            .populate_existing()
            .first(),
        )

    # Overlap queries

    def find_overlapping_claims(
        self,
        partner_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        now: datetime,
        exclude_slot_id: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        """
        HELD/BOOKED slots of the partner overlapping [start_time, end_time).

        Holds whose grace period has run out no longer count as claims.
        """
        query = self._build_query().filter(
            AvailabilitySlot.partner_id == partner_id,
            AvailabilitySlot.slot_date == slot_date,
            AvailabilitySlot.status.in_(_CLAIMED),
            AvailabilitySlot.start_time < end_time,
            AvailabilitySlot.end_time > start_time,
            not_(
                and_(
                    AvailabilitySlot.status == SlotStatus.HELD.value,
                    AvailabilitySlot.hold_expires_at.isnot(None),
                    AvailabilitySlot.hold_expires_at <= now,
                )
            ),
        )
        if exclude_slot_id:
            query = query.filter(AvailabilitySlot.id != exclude_slot_id)
        return self._execute_query(query)

    def find_overlapping(
        self,
        partner_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        exclude_slot_id: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        """Any slot of the partner overlapping the range, whatever its status."""
        query = self._build_query().filter(
            AvailabilitySlot.partner_id == partner_id,
            AvailabilitySlot.slot_date == slot_date,
            AvailabilitySlot.start_time < end_time,
            AvailabilitySlot.end_time > start_time,
        )
        if exclude_slot_id:
            query = query.filter(AvailabilitySlot.id != exclude_slot_id)
        return self._execute_query(query)

    def find_open_window(
        self,
        partner_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
    ) -> Optional[AvailabilitySlot]:
        """An OPEN declared window that fully contains the range, exact matches first."""
        query = (
            self._build_query()
            .filter(
                AvailabilitySlot.partner_id == partner_id,
                AvailabilitySlot.slot_date == slot_date,
                AvailabilitySlot.status == SlotStatus.OPEN.value,
                AvailabilitySlot.start_time <= start_time,
                AvailabilitySlot.end_time >= end_time,
            )
            .order_by(AvailabilitySlot.start_time.desc(), AvailabilitySlot.end_time.asc())
        )
        candidates = self._execute_query(query)
        return candidates[0] if candidates else None

    def get_partner_slots(
        self,
        partner_id: str,
        start_date: date,
        end_date: date,
        status: Optional[SlotStatus] = None,
    ) -> List[AvailabilitySlot]:
        query = self._build_query().filter(
            AvailabilitySlot.partner_id == partner_id,
            AvailabilitySlot.slot_date >= start_date,
            AvailabilitySlot.slot_date <= end_date,
        )
        if status is not None:
            query = query.filter(AvailabilitySlot.status == status.value)
        return self._execute_query(
            query.order_by(AvailabilitySlot.slot_date, AvailabilitySlot.start_time)
        )

    def get_by_hold_token(self, hold_token: str) -> Optional[AvailabilitySlot]:
        return self.find_one_by(hold_token=hold_token)

    def get_expired_holds(self, now: datetime, limit: int) -> List[AvailabilitySlot]:
        query = (
            self._build_query()
            .filter(
                AvailabilitySlot.status == SlotStatus.HELD.value,
                AvailabilitySlot.hold_expires_at.isnot(None),
                AvailabilitySlot.hold_expires_at <= now,
            )
            .order_by(AvailabilitySlot.hold_expires_at)
            .limit(limit)
        )
        return self._execute_query(query)

    # Conditional status updates

    def _execute_update(self, stmt, slot_id: Optional[str] = None) -> bool:
        try:
            self.db.flush()
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            changed = result.rowcount >= 1
            if changed and slot_id:
                entity = self.db.get(AvailabilitySlot, slot_id)
                if entity is not None:
                    self.db.refresh(entity)
            return changed
        except SQLAlchemyError as e:
            self.logger.error(f"Slot status update failed: {str(e)}")
            raise RepositoryException(f"Failed to update slot: {str(e)}")

    def mark_held(self, slot_id: str, hold_token: str, expires_at: datetime, now: datetime) -> bool:
        """OPEN -> HELD for a declared window."""
        return self.conditional_update(
            slot_id,
            {"status": SlotStatus.OPEN.value},
            {
                "status": SlotStatus.HELD.value,
                "hold_token": hold_token,
                "hold_expires_at": expires_at,
                "updated_at": now,
            },
        )

    def confirm_hold(self, hold_token: str, now: datetime) -> bool:
        """
        HELD -> BOOKED, only while the hold is still inside its grace period.

        A tardy confirm after expiry matches no row and fails closed.
        """
        slot = self.get_by_hold_token(hold_token)
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.hold_token == hold_token,
                AvailabilitySlot.status == SlotStatus.HELD.value,
                AvailabilitySlot.hold_expires_at > now,
            )
            .values(status=SlotStatus.BOOKED.value, hold_expires_at=None, updated_at=now)
        )
        return self._execute_update(stmt, slot.id if slot else None)

    def release(self, slot_id: str, now: datetime, hold_token: Optional[str] = None) -> bool:
        """HELD/BOOKED -> OPEN, optionally only for the claim identified by ``hold_token``."""
        stmt = update(AvailabilitySlot).where(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.status.in_(_CLAIMED),
        )
        if hold_token is not None:
            stmt = stmt.where(AvailabilitySlot.hold_token == hold_token)
        stmt = (
            stmt
            .values(
                status=SlotStatus.OPEN.value,
                hold_token=None,
                hold_expires_at=None,
                updated_at=now,
            )
        )
        return self._execute_update(stmt, slot_id)

    def revert_expired_hold(self, slot_id: str, now: datetime) -> bool:
        """HELD -> OPEN, only if the hold is actually past its expiry."""
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.status == SlotStatus.HELD.value,
                or_(
                    AvailabilitySlot.hold_expires_at.is_(None),
                    AvailabilitySlot.hold_expires_at <= now,
                ),
            )
            .values(
                status=SlotStatus.OPEN.value,
                hold_token=None,
                hold_expires_at=None,
                updated_at=now,
            )
        )
        return self._execute_update(stmt, slot_id)
