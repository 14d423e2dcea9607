# backend/meetbook/repositories/booking_repository.py
"""
Booking Repository for the Meetbook booking core.

Implements all data access operations for bookings:
- Booking creation and code lookups
- Conditional status transitions (compare-and-set on status)
- Status history
- Requester/partner/admin listings with filters
- Aggregates for statistics
"""

from datetime import date, datetime
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, cast

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.enums import TERMINAL_BOOKING_STATUSES, BookingStatus
from ..core.exceptions import RepositoryException
from ..models.booking import Booking, BookingStatusHistory
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    # Lookups

    def get_by_code(self, code: str) -> Optional[Booking]:
        try:
            return cast(
                Optional[Booking],
                self.db.query(Booking).filter(Booking.code == code.strip().upper()).first(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting booking by code {code}: {str(e)}")
            raise RepositoryException(f"Failed to get booking by code: {str(e)}")

    def code_exists(self, code: str) -> bool:
        return self.exists(code=code)

    def get_pending_for_slot(self, slot_id: str) -> List[Booking]:
        """PENDING bookings still waiting on the given slot hold."""
        query = self._build_query().filter(
            Booking.slot_id == slot_id,
            Booking.status == BookingStatus.PENDING.value,
        )
        return self._execute_query(query)

    # Transitions

    def transition_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        target: BookingStatus,
        **values: Any,
    ) -> bool:
        """
        Move a booking from ``expected`` to ``target`` in one conditional UPDATE.

        Returns False when the booking is no longer in ``expected``.
        """
        values["status"] = target.value
        return self.conditional_update(booking_id, {"status": expected.value}, values)

    def add_history(
        self,
        *,
        booking_id: str,
        from_status: Optional[str],
        to_status: str,
        event: str,
        actor_id: str,
        actor_role: str,
        reason: Optional[str],
        created_at: datetime,
    ) -> BookingStatusHistory:
        try:
            last = (
                self.db.query(func.max(BookingStatusHistory.sequence))
                .filter(BookingStatusHistory.booking_id == booking_id)
                .scalar()
            )
            entry = BookingStatusHistory(
                booking_id=booking_id,
                sequence=int(last or 0) + 1,
                from_status=from_status,
                to_status=to_status,
                event=event,
                actor_id=actor_id,
                actor_role=actor_role,
                reason=reason,
                created_at=created_at,
            )
            self.db.add(entry)
            self.db.flush()
            return entry
        except SQLAlchemyError as e:
            self.logger.error(f"Error writing history for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to record booking history: {str(e)}")

    def get_history(self, booking_id: str) -> List[BookingStatusHistory]:
        try:
            return cast(
                List[BookingStatusHistory],
                self.db.query(BookingStatusHistory)
                .filter(BookingStatusHistory.booking_id == booking_id)
                .order_by(BookingStatusHistory.sequence)
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting history for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to get booking history: {str(e)}")

    # Listings

    def _apply_list_filters(
        self,
        query: Query,
        *,
        statuses: Optional[Iterable[BookingStatus]] = None,
        upcoming_from: Optional[date] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Query:
        if statuses:
            query = query.filter(Booking.status.in_([s.value for s in statuses]))
        if upcoming_from is not None:
            query = query.filter(
                Booking.booking_date >= upcoming_from,
                Booking.status.notin_([s.value for s in TERMINAL_BOOKING_STATUSES]),
            )
        if date_from is not None:
            query = query.filter(Booking.booking_date >= date_from)
        if date_to is not None:
            query = query.filter(Booking.booking_date <= date_to)
        return query

    def get_requester_bookings(
        self,
        requester_id: str,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        upcoming_from: Optional[date] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Booking]:
        """Requester bookings, soonest first for upcoming views, newest first otherwise."""
        query = self._build_query().filter(Booking.requester_id == requester_id)
        query = self._apply_list_filters(query, statuses=statuses, upcoming_from=upcoming_from)
        if upcoming_from is not None:
            query = query.order_by(Booking.booking_date.asc(), Booking.start_time.asc())
        else:
            query = query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        if limit:
            query = query.limit(limit)
        if offset:
            query = query.offset(offset)
        return self._execute_query(query)

    def get_partner_bookings(
        self,
        partner_id: str,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        upcoming_from: Optional[date] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Booking]:
        query = self._build_query().filter(Booking.partner_id == partner_id)
        query = self._apply_list_filters(
            query,
            statuses=statuses,
            upcoming_from=upcoming_from,
            date_from=date_from,
            date_to=date_to,
        )
        query = query.order_by(Booking.booking_date.asc(), Booking.start_time.asc())
        if limit:
            query = query.limit(limit)
        if offset:
            query = query.offset(offset)
        return self._execute_query(query)

    def search_bookings(
        self,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        requester_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        code_query: Optional[str] = None,
        limit: int,
        offset: int = 0,
    ) -> Tuple[List[Booking], int]:
        """Admin listing. Returns the requested page and the total match count."""
        query = self._build_query()
        query = self._apply_list_filters(
            query, statuses=statuses, date_from=date_from, date_to=date_to
        )
        if requester_id:
            query = query.filter(Booking.requester_id == requester_id)
        if partner_id:
            query = query.filter(Booking.partner_id == partner_id)
        if code_query:
            term = f"%{code_query.strip().upper()}%"
            query = query.filter(or_(Booking.code.like(term), Booking.id == code_query.strip()))

        try:
            total = query.count()
            items = (
                query.order_by(Booking.created_at.desc(), Booking.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return cast(List[Booking], items), total
        except SQLAlchemyError as e:
            self.logger.error(f"Error searching bookings: {str(e)}")
            raise RepositoryException(f"Failed to search bookings: {str(e)}")

    # Aggregates

    def count_by_status(
        self,
        *,
        requester_id: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """Booking counts keyed by status value; every status is present."""
        try:
            query = self.db.query(Booking.status, func.count(Booking.id).label("count"))
            if requester_id:
                query = query.filter(Booking.requester_id == requester_id)
            if partner_id:
                query = query.filter(Booking.partner_id == partner_id)
            rows = query.group_by(Booking.status).all()

            counts = {status.value: 0 for status in BookingStatus}
            for status_value, count in rows:
                counts[status_value] = int(count)
            return counts
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting bookings by status: {str(e)}")
            raise RepositoryException(f"Failed to count bookings: {str(e)}")

    def count_upcoming(
        self,
        today: date,
        *,
        requester_id: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> int:
        query = self.db.query(func.count(Booking.id)).filter(
            Booking.booking_date >= today,
            Booking.status.notin_([s.value for s in TERMINAL_BOOKING_STATUSES]),
        )
        if requester_id:
            query = query.filter(Booking.requester_id == requester_id)
        if partner_id:
            query = query.filter(Booking.partner_id == partner_id)
        return int(self._execute_scalar(query) or 0)

    def sum_amount(
        self,
        column: str,
        *,
        statuses: Sequence[BookingStatus],
        requester_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        completed_from: Optional[datetime] = None,
        completed_to: Optional[datetime] = None,
    ) -> int:
        """Sum one of ``subtotal``, ``fee`` or ``total`` over matching bookings."""
        if column not in ("subtotal", "fee", "total"):
            raise ValueError(f"Cannot sum booking column {column!r}")
        query = self.db.query(func.coalesce(func.sum(getattr(Booking, column)), 0)).filter(
            Booking.status.in_([s.value for s in statuses])
        )
        if requester_id:
            query = query.filter(Booking.requester_id == requester_id)
        if partner_id:
            query = query.filter(Booking.partner_id == partner_id)
        if completed_from is not None:
            query = query.filter(Booking.completed_at >= completed_from)
        if completed_to is not None:
            query = query.filter(Booking.completed_at < completed_to)
        return int(self._execute_scalar(query) or 0)

    def count_created_between(self, start: datetime, end: datetime) -> int:
        query = self.db.query(func.count(Booking.id)).filter(
            Booking.created_at >= start, Booking.created_at < end
        )
        return int(self._execute_scalar(query) or 0)
