# backend/meetbook/services/booking_service.py
"""
Booking Service for the Meetbook booking core.

Orchestrates the pricing calculator, slot registry, booking state machine
and escrow scheduler:
- Creating bookings (validation, pricing snapshot, slot hold, PENDING row)
- Driving lifecycle transitions, with ledger calls kept outside transactions
- Booking queries, statistics and administrative overrides
- Background upkeep (expired slot holds, escrow sweep follow-ups)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from ..core.clock import Clock, combine_utc, ensure_utc
from ..core.config import settings
from ..core.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_NOTE_LENGTH,
    MAX_PAGE_SIZE,
    MAX_REASON_LENGTH,
    SYSTEM_ACTOR_ID,
)
from ..core.enums import ActorRole, BookingEvent, BookingStatus
from ..core.exceptions import (
    BusinessRuleException,
    CannotBookSelfException,
    DomainException,
    ForbiddenException,
    InsufficientHoursException,
    NotFoundException,
    SettlementPendingException,
    SlotHoldExpiredException,
    SlotNotAvailableException,
    StaleStateException,
    ValidationException,
)
from ..core.ulid_helper import generate_booking_code
from ..database import with_db_retry
from ..integrations.ledger_client import LedgerClient, build_ledger_client
from ..models.booking import Booking, BookingStatusHistory
from ..repositories.booking_repository import BookingRepository
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_state_machine import BookingStateMachine, TransitionRequest
from .escrow_scheduler import EscrowScheduler, ReleaseTimer, SweepReport
from .partner_directory import PartnerDirectory
from .pricing_service import PriceBreakdown, PricingService
from .slot_registry import HoldRejection, SlotRegistry, validate_time_range

logger = logging.getLogger(__name__)

HOLD_EXPIRED_REASON = "Slot hold expired"

_HOURS_QUANTUM = Decimal("0.01")
_SPENT_STATUSES = (
    BookingStatus.PAID,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
    BookingStatus.DISPUTED,
)


@dataclass
class BookingPage:
    """One page of an admin booking listing."""

    items: List[Booking]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def requested_hours_between(start_time: time, end_time: time) -> Decimal:
    minutes = (end_time.hour * 60 + end_time.minute) - (start_time.hour * 60 + start_time.minute)
    return (Decimal(minutes) / Decimal(60)).quantize(_HOURS_QUANTUM, rounding=ROUND_HALF_UP)


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Centralizes all booking business logic and coordinates the slot registry
    and escrow scheduler.
    """

    repository: BookingRepository

    def __init__(
        self,
        db: Session,
        partner_directory: PartnerDirectory,
        ledger: Optional[LedgerClient] = None,
        clock: Optional[Clock] = None,
        timer: Optional[ReleaseTimer] = None,
        *,
        repository: Optional[BookingRepository] = None,
        slot_registry: Optional[SlotRegistry] = None,
        escrow_scheduler: Optional[EscrowScheduler] = None,
        pricing_service: Optional[PricingService] = None,
    ) -> None:
        """
        Initialize booking service.

        Args:
            db: Database session
            partner_directory: Source of partner rates and minimums
            ledger: Ledger client; defaults to the one selected by settings
            clock: Time source shared with every collaborator
            timer: Release timer for the escrow scheduler
        """
        super().__init__(db, clock)
        self.partner_directory = partner_directory
        self.repository = repository or RepositoryFactory.create_booking_repository(db)
        self.slot_registry = slot_registry or SlotRegistry(db, self.clock)
        self.escrow = escrow_scheduler or EscrowScheduler(
            db, ledger or build_ledger_client(), self.clock, timer
        )
        self.pricing = pricing_service or PricingService(db, self.clock)
        self.state_machine = BookingStateMachine(
            db, self.slot_registry, self.escrow, self.clock, repository=self.repository
        )

    # Creation

    def _validate_request(
        self,
        requester_id: str,
        partner_id: str,
        service_type: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        meeting_lat: Optional[float],
        meeting_lng: Optional[float],
    ) -> Decimal:
        """Synchronous request checks. Returns the requested hours."""
        if requester_id == partner_id:
            raise CannotBookSelfException(requester_id)
        if not service_type or not service_type.strip():
            raise ValidationException("Service type is required", code="SERVICE_TYPE_REQUIRED")
        validate_time_range(start_time, end_time)

        now = self.clock.now()
        if combine_utc(booking_date, start_time) <= now:
            raise ValidationException("Cannot book a time in the past", code="DATE_IN_PAST")
        latest = now.date() + timedelta(days=settings.advance_booking_days)
        if booking_date > latest:
            raise ValidationException(
                f"Bookings can be made at most {settings.advance_booking_days} days ahead",
                code="DATE_TOO_FAR",
                details={"latest_date": latest.isoformat()},
            )

        hours = requested_hours_between(start_time, end_time)
        if hours < settings.minimum_booking_hours:
            raise InsufficientHoursException(settings.minimum_booking_hours, float(hours))
        if hours > settings.max_booking_hours:
            raise ValidationException(
                f"Bookings cannot be longer than {settings.max_booking_hours} hours",
                code="EXCEEDS_MAX_HOURS",
                details={"requested_hours": float(hours)},
            )

        if (meeting_lat is None) != (meeting_lng is None):
            raise ValidationException(
                "Both coordinates are required", code="INVALID_COORDINATES"
            )
        if meeting_lat is not None and not -90 <= meeting_lat <= 90:
            raise ValidationException("Latitude out of range", code="INVALID_COORDINATES")
        if meeting_lng is not None and not -180 <= meeting_lng <= 180:
            raise ValidationException("Longitude out of range", code="INVALID_COORDINATES")
        return hours

    def _unique_code(self) -> str:
        code = generate_booking_code()
        while self.repository.code_exists(code):
            code = generate_booking_code()
        return code

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        requester_id: str,
        partner_id: str,
        service_type: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        *,
        meeting_location: Optional[str] = None,
        meeting_lat: Optional[float] = None,
        meeting_lng: Optional[float] = None,
        requester_note: Optional[str] = None,
    ) -> Booking:
        """
        Create a PENDING booking holding the partner's time window.

        The slot hold, the booking row and its first history entry commit
        together; if anything fails the hold is rolled back with them.

        Raises:
            CannotBookSelfException, InsufficientHoursException,
            SlotNotAvailableException, ValidationException
        """
        hours = self._validate_request(
            requester_id,
            partner_id,
            service_type,
            booking_date,
            start_time,
            end_time,
            meeting_lat,
            meeting_lng,
        )
        if requester_note and len(requester_note) > MAX_NOTE_LENGTH:
            raise ValidationException(
                f"Note cannot exceed {MAX_NOTE_LENGTH} characters", code="NOTE_TOO_LONG"
            )

        terms = self.partner_directory.get_terms(partner_id)
        if not terms.is_available:
            raise BusinessRuleException(
                "This partner is not accepting bookings",
                code="PARTNER_UNAVAILABLE",
                details={"partner_id": partner_id},
            )
        price = self.pricing.get_booking_price(
            terms.hourly_rate, hours, partner_minimum_hours=terms.minimum_hours
        )
        currency = (terms.currency or settings.default_currency).upper()

        def _create() -> Booking:
            with self.transaction():
                hold = self.slot_registry.try_hold(partner_id, booking_date, start_time, end_time)
                if isinstance(hold, HoldRejection):
                    raise SlotNotAvailableException(
                        details={
                            "partner_id": partner_id,
                            "date": booking_date.isoformat(),
                            "conflicting_slot_ids": list(hold.conflicting_slot_ids),
                        }
                    )
                now = self.clock.now()
                booking = self.repository.create(
                    code=self._unique_code(),
                    requester_id=requester_id,
                    partner_id=partner_id,
                    service_type=service_type.strip(),
                    booking_date=booking_date,
                    start_time=start_time,
                    end_time=end_time,
                    meeting_location=meeting_location,
                    meeting_lat=meeting_lat,
                    meeting_lng=meeting_lng,
                    requester_note=requester_note,
                    **self._price_snapshot(price),
                    currency=currency,
                    status=BookingStatus.PENDING.value,
                    slot_id=hold.slot_id,
                    slot_hold_token=hold.token,
                    created_at=now,
                )
                self.repository.add_history(
                    booking_id=booking.id,
                    from_status=None,
                    to_status=BookingStatus.PENDING.value,
                    event="create",
                    actor_id=requester_id,
                    actor_role=ActorRole.REQUESTER.value,
                    reason=None,
                    created_at=now,
                )
            return booking

        booking = with_db_retry("create_booking", _create)
        self.log_operation(
            "booking_created",
            booking_id=booking.id,
            booking_code=booking.code,
            partner_id=partner_id,
            total=booking.total,
        )
        return booking

    @staticmethod
    def _price_snapshot(price: PriceBreakdown) -> Dict[str, Any]:
        return {
            "hourly_rate": price.hourly_rate,
            "requested_hours": price.requested_hours,
            "actual_hours": price.actual_hours,
            "minimum_applied": price.minimum_applied,
            "fee_rate": price.fee_rate,
            "subtotal": price.subtotal,
            "fee": price.fee,
            "total": price.total,
        }

    def get_booking_price(
        self,
        hourly_rate: Union[int, Decimal],
        requested_hours: Union[int, float, Decimal],
        *,
        partner_minimum_hours: Optional[int] = None,
    ) -> PriceBreakdown:
        """Read-only price preview."""
        return self.pricing.get_booking_price(
            hourly_rate, requested_hours, partner_minimum_hours=partner_minimum_hours
        )

    # Transitions

    def _load(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    @BaseService.measure_operation("transition")
    def transition(
        self,
        booking_id: str,
        event: Union[BookingEvent, str],
        actor_id: str,
        actor_role: Union[ActorRole, str],
        reason: Optional[str] = None,
        *,
        confirmed_by_participant: bool = False,
    ) -> Booking:
        """
        Apply a lifecycle event to a booking.

        Raises:
            InvalidStatusTransitionException: the event is not legal from the current status
            AlreadyInStateException: the booking is already in the event's target status
            SettlementPendingException: ``pay`` was not acknowledged by the ledger yet
            StaleStateException: a concurrent transition won
        """
        try:
            request = TransitionRequest(
                event=BookingEvent(event),
                actor_id=actor_id,
                actor_role=ActorRole(actor_role),
                reason=reason,
                confirmed_by_participant=confirmed_by_participant,
            )
        except ValueError as exc:
            raise ValidationException(str(exc), code="INVALID_EVENT") from exc

        if request.event == BookingEvent.PAY:
            return self._pay(booking_id, request)
        if request.event == BookingEvent.CANCEL:
            return self._cancel(booking_id, request)
        if request.event == BookingEvent.CONFIRM:
            return self._confirm(booking_id, request)

        with self.transaction():
            booking = self.state_machine.apply(self._load(booking_id), request)
        return booking

    def _confirm(self, booking_id: str, request: TransitionRequest) -> Booking:
        try:
            with self.transaction():
                booking = self.state_machine.apply(self._load(booking_id), request)
            return booking
        except SlotHoldExpiredException:
            # The hold lapsed before the partner answered; the booking cannot stand
            self._cancel_for_expired_hold(booking_id)
            raise

    def _pay(self, booking_id: str, request: TransitionRequest) -> Booking:
        # Phase 1: validate without holding a transaction over the ledger call
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.preflight(booking, request)
            amount, currency = booking.total, booking.currency
            observed = booking.status_enum

        # Phase 2: escrow hold (manages its own short transactions)
        result = self.escrow.hold(booking_id, amount, currency)

        # Phase 3: move the booking
        with self.transaction():
            booking = self._load(booking_id)
            if booking.status_enum != observed:
                # Cancelled while the hold was out; the escrow refunds it
                raise StaleStateException("Booking", booking_id, observed.value)
            if not result.acknowledged:
                raise SettlementPendingException(booking_id, result.kind.value, result.error)
            booking = self.state_machine.apply(booking, request)
        return booking

    def _cancel(self, booking_id: str, request: TransitionRequest) -> Booking:
        with self.transaction():
            booking = self.state_machine.apply(self._load(booking_id), request)

        # Refund after the cancellation is durable; failures are retried by the sweep
        settlement = self.escrow.refund(booking_id)
        if settlement is not None and not settlement.acknowledged:
            self.logger.warning(
                "Refund not acknowledged yet",
                extra={
                    "booking_id": booking_id,
                    "transaction_code": settlement.transaction_code,
                    "error": settlement.error,
                    "escalated": settlement.escalated,
                },
            )
        return booking

    def _system_request(
        self, event: BookingEvent, reason: Optional[str] = None
    ) -> TransitionRequest:
        return TransitionRequest(
            event=event, actor_id=SYSTEM_ACTOR_ID, actor_role=ActorRole.SYSTEM, reason=reason
        )

    def _cancel_for_expired_hold(self, booking_id: str) -> None:
        try:
            with self.transaction():
                booking = self._load(booking_id)
                if booking.status_enum != BookingStatus.PENDING:
                    return
                self.state_machine.apply(
                    booking, self._system_request(BookingEvent.CANCEL, HOLD_EXPIRED_REASON)
                )
        except StaleStateException:
            self.logger.info(
                "Expired-hold cancellation lost a race", extra={"booking_id": booking_id}
            )

    # Queries

    def get_booking(self, booking_id: str, viewer_id: str, viewer_role: ActorRole) -> Booking:
        booking = self._load(booking_id)
        if viewer_role not in (ActorRole.ADMIN, ActorRole.SYSTEM) and not booking.is_participant(
            viewer_id
        ):
            raise ForbiddenException("You cannot view this booking", code="NOT_ALLOWED")
        return booking

    def get_booking_by_code(self, code: str) -> Booking:
        booking = self.repository.get_by_code(code)
        if booking is None:
            raise NotFoundException("Booking not found", details={"code": code})
        return booking

    def get_history(
        self, booking_id: str, viewer_id: str, viewer_role: ActorRole
    ) -> List[BookingStatusHistory]:
        self.get_booking(booking_id, viewer_id, viewer_role)
        return self.repository.get_history(booking_id)

    @staticmethod
    def _page_bounds(limit: Optional[int], offset: int) -> tuple[int, int]:
        if offset < 0:
            raise ValidationException("Offset cannot be negative", code="INVALID_PAGINATION")
        size = DEFAULT_PAGE_SIZE if limit is None else limit
        if not 1 <= size <= MAX_PAGE_SIZE:
            raise ValidationException(
                f"Page size must be between 1 and {MAX_PAGE_SIZE}", code="INVALID_PAGINATION"
            )
        return size, offset

    def list_requester_bookings(
        self,
        requester_id: str,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        upcoming_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Booking]:
        size, offset = self._page_bounds(limit, offset)
        return self.repository.get_requester_bookings(
            requester_id,
            statuses=statuses,
            upcoming_from=self.clock.now().date() if upcoming_only else None,
            limit=size,
            offset=offset,
        )

    def list_partner_bookings(
        self,
        partner_id: str,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        upcoming_only: bool = False,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Booking]:
        size, offset = self._page_bounds(limit, offset)
        return self.repository.get_partner_bookings(
            partner_id,
            statuses=statuses,
            upcoming_from=self.clock.now().date() if upcoming_only else None,
            date_from=date_from,
            date_to=date_to,
            limit=size,
            offset=offset,
        )

    def search_bookings(
        self,
        *,
        statuses: Optional[Sequence[BookingStatus]] = None,
        requester_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        code_query: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> BookingPage:
        """Admin listing with filters and pagination metadata."""
        if date_from and date_to and date_to < date_from:
            raise ValidationException(
                "End date must not be before start date", code="INVALID_DATE_RANGE"
            )
        size, offset = self._page_bounds(limit, offset)
        items, total = self.repository.search_bookings(
            statuses=statuses,
            requester_id=requester_id,
            partner_id=partner_id,
            date_from=date_from,
            date_to=date_to,
            code_query=code_query,
            limit=size,
            offset=offset,
        )
        return BookingPage(items=items, total=total, limit=size, offset=offset)

    # Statistics

    def get_requester_stats(self, requester_id: str) -> Dict[str, int]:
        counts = self.repository.count_by_status(requester_id=requester_id)
        return {
            "total_bookings": sum(counts.values()),
            "completed": counts[BookingStatus.COMPLETED.value],
            "cancelled": counts[BookingStatus.CANCELLED.value],
            "upcoming": self.repository.count_upcoming(
                self.clock.now().date(), requester_id=requester_id
            ),
            "total_spent": self.repository.sum_amount(
                "total", statuses=_SPENT_STATUSES, requester_id=requester_id
            ),
        }

    def get_partner_stats(self, partner_id: str) -> Dict[str, int]:
        counts = self.repository.count_by_status(partner_id=partner_id)
        return {
            "total_bookings": sum(counts.values()),
            "completed": counts[BookingStatus.COMPLETED.value],
            "cancelled": counts[BookingStatus.CANCELLED.value],
            "pending": counts[BookingStatus.PENDING.value],
            "upcoming": self.repository.count_upcoming(
                self.clock.now().date(), partner_id=partner_id
            ),
            "total_earned": self.repository.sum_amount(
                "subtotal", statuses=(BookingStatus.COMPLETED,), partner_id=partner_id
            ),
        }

    def get_admin_stats(self) -> Dict[str, Any]:
        now = self.clock.now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)
        if month_start.month == 12:
            next_month = month_start.replace(year=month_start.year + 1, month=1)
        else:
            next_month = month_start.replace(month=month_start.month + 1)

        counts = self.repository.count_by_status()
        return {
            "total_bookings": sum(counts.values()),
            "by_status": counts,
            "created_today": self.repository.count_created_between(
                day_start, day_start + timedelta(days=1)
            ),
            "monthly_revenue": self.repository.sum_amount(
                "fee",
                statuses=(BookingStatus.COMPLETED,),
                completed_from=month_start,
                completed_to=next_month,
            ),
            "escrow_needing_attention": len(self.escrow.list_needing_attention()),
        }

    # Administration

    @BaseService.measure_operation("admin_override")
    def admin_override(
        self,
        booking_id: str,
        admin_id: str,
        *,
        reason: Optional[str] = None,
        admin_note: Optional[str] = None,
    ) -> Booking:
        """Amend the reason or notes of a terminal booking. Status never changes here."""
        if reason is None and admin_note is None:
            raise ValidationException("Nothing to update", code="EMPTY_OVERRIDE")
        with self.transaction():
            booking = self._load(booking_id)
            if not booking.is_terminal:
                raise BusinessRuleException(
                    "Only finished bookings can be amended",
                    code="BOOKING_NOT_TERMINAL",
                    details={"status": booking.status},
                )
            values: Dict[str, Any] = {"updated_at": self.clock.now()}
            if reason is not None:
                if booking.status_enum != BookingStatus.CANCELLED:
                    raise BusinessRuleException(
                        "Only cancelled bookings carry a reason", code="NOT_CANCELLED"
                    )
                reason = reason.strip()
                if not reason or len(reason) > MAX_REASON_LENGTH:
                    raise ValidationException("Invalid reason", code="INVALID_REASON")
                values["cancellation_reason"] = reason
            if admin_note is not None:
                if len(admin_note) > MAX_NOTE_LENGTH:
                    raise ValidationException(
                        f"Note cannot exceed {MAX_NOTE_LENGTH} characters", code="NOTE_TOO_LONG"
                    )
                values["admin_note"] = admin_note.strip() or None
            self.repository.update(booking.id, **values)

        self.log_operation("booking_overridden", booking_id=booking_id, admin_id=admin_id)
        return booking

    # Background upkeep

    @BaseService.measure_operation("expire_stale_holds")
    def expire_stale_holds(self, limit: int = 100) -> int:
        """
        Revert slot holds whose grace period ran out and cancel their PENDING bookings.

        Returns the number of holds reverted.
        """
        reverted = 0
        for slot in self.slot_registry.get_expired_holds(limit):
            hold_token = slot.hold_token
            try:
                with self.transaction():
                    if not self.slot_registry.revert_expired_hold(slot.id):
                        continue
                    reverted += 1
                    for booking in self.repository.get_pending_for_slot(slot.id):
                        if booking.slot_hold_token != hold_token:
                            continue
                        self.state_machine.apply(
                            booking,
                            self._system_request(BookingEvent.CANCEL, HOLD_EXPIRED_REASON),
                        )
            except StaleStateException:
                self.logger.info("Hold expiry lost a race", extra={"slot_id": slot.id})
        if reverted:
            self.logger.info("Expired slot holds reverted", extra={"count": reverted})
        return reverted

    @BaseService.measure_operation("run_escrow_sweep")
    def run_escrow_sweep(self, limit: Optional[int] = None) -> SweepReport:
        """Run the escrow sweep and move bookings whose late hold was acknowledged to PAID."""
        report = self.escrow.sweep(limit)
        for booking_id in report.holds_acknowledged:
            try:
                with self.transaction():
                    booking = self._load(booking_id)
                    if booking.status_enum != BookingStatus.CONFIRMED:
                        continue
                    self.state_machine.apply(booking, self._system_request(BookingEvent.PAY))
            except DomainException as exc:
                self.logger.warning(
                    "Acknowledged hold could not move booking to PAID",
                    extra={"booking_id": booking_id, "code": exc.code},
                )
        return report

    def release_due_at(self, booking: Booking) -> Optional[datetime]:
        record = self.escrow.get_record(booking.id)
        if record is None or record.release_at is None:
            return None
        return ensure_utc(record.release_at)
