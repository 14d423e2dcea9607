# backend/meetbook/services/booking_state_machine.py
"""
Booking State Machine for the Meetbook booking core.

The only code that changes a booking's status. ``TRANSITIONS`` is the whole
lifecycle: any (status, event) pair missing from it is rejected. Each
applied transition is one conditional UPDATE on the status the caller
observed, followed by a history row and the transition's side effect on the
slot or the escrow record.

``apply`` runs inside the caller's transaction. Ledger calls never happen
here; the booking service drives those around the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Dict, FrozenSet, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.constants import MAX_REASON_LENGTH
from ..core.enums import ActorRole, BookingEvent, BookingStatus, EscrowState
from ..core.exceptions import (
    AlreadyInStateException,
    BusinessRuleException,
    ForbiddenException,
    InvalidStatusTransitionException,
    StaleStateException,
    ValidationException,
)
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .escrow_scheduler import EscrowScheduler
from .slot_registry import SlotRegistry

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[Tuple[BookingStatus, BookingEvent], BookingStatus] = {
    (BookingStatus.PENDING, BookingEvent.CONFIRM): BookingStatus.CONFIRMED,
    (BookingStatus.CONFIRMED, BookingEvent.PAY): BookingStatus.PAID,
    (BookingStatus.PAID, BookingEvent.START): BookingStatus.IN_PROGRESS,
    (BookingStatus.IN_PROGRESS, BookingEvent.COMPLETE): BookingStatus.COMPLETED,
    (BookingStatus.PENDING, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.PAID, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.IN_PROGRESS, BookingEvent.DISPUTE): BookingStatus.DISPUTED,
    (BookingStatus.COMPLETED, BookingEvent.DISPUTE): BookingStatus.DISPUTED,
}

EVENT_TARGETS: Dict[BookingEvent, BookingStatus] = {
    event: target for (_, event), target in TRANSITIONS.items()
}

# Roles allowed to trigger each event; participants must also own the booking
ALLOWED_ROLES: Dict[BookingEvent, FrozenSet[ActorRole]] = {
    BookingEvent.CONFIRM: frozenset({ActorRole.PARTNER, ActorRole.ADMIN}),
    BookingEvent.PAY: frozenset({ActorRole.REQUESTER, ActorRole.ADMIN, ActorRole.SYSTEM}),
    BookingEvent.START: frozenset(
        {ActorRole.REQUESTER, ActorRole.PARTNER, ActorRole.ADMIN, ActorRole.SYSTEM}
    ),
    BookingEvent.COMPLETE: frozenset(
        {ActorRole.REQUESTER, ActorRole.PARTNER, ActorRole.ADMIN, ActorRole.SYSTEM}
    ),
    BookingEvent.CANCEL: frozenset(
        {ActorRole.REQUESTER, ActorRole.PARTNER, ActorRole.ADMIN, ActorRole.SYSTEM}
    ),
    BookingEvent.DISPUTE: frozenset({ActorRole.REQUESTER, ActorRole.PARTNER, ActorRole.ADMIN}),
}

_STAMP_FIELDS: Dict[BookingStatus, str] = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.PAID: "paid_at",
    BookingStatus.IN_PROGRESS: "started_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
    BookingStatus.DISPUTED: "disputed_at",
}

# Cancellations from these statuses are subject to the notice window
_NOTICE_WINDOW_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.PAID})


def resolve_transition(
    booking_id: str, current: BookingStatus, event: BookingEvent
) -> BookingStatus:
    """
    Look the pair up in the transition table.

    Raises AlreadyInStateException when the event would leave the booking
    where it is, InvalidStatusTransitionException for any other missing pair.
    """
    target = TRANSITIONS.get((current, event))
    if target is not None:
        return target
    if EVENT_TARGETS.get(event) == current:
        raise AlreadyInStateException(booking_id, current.value)
    raise InvalidStatusTransitionException(booking_id, current.value, event.value)


@dataclass(frozen=True)
class TransitionRequest:
    """Who asks for which event, and why."""

    event: BookingEvent
    actor_id: str
    actor_role: ActorRole
    reason: Optional[str] = None
    # Lets a participant complete a meetup that wrapped up early
    confirmed_by_participant: bool = False


class BookingStateMachine(BaseService):
    """Validates and applies booking transitions."""

    def __init__(
        self,
        db: Session,
        slot_registry: SlotRegistry,
        escrow_scheduler: EscrowScheduler,
        clock: Optional[Clock] = None,
        *,
        repository: Optional[BookingRepository] = None,
    ) -> None:
        super().__init__(db, clock or escrow_scheduler.clock)
        self.slot_registry = slot_registry
        self.escrow = escrow_scheduler
        self.repository = repository or RepositoryFactory.create_booking_repository(db)

    # Checks that do not depend on side-effect state

    def authorize(self, booking: Booking, request: TransitionRequest) -> None:
        if request.actor_role not in ALLOWED_ROLES[request.event]:
            raise ForbiddenException(
                f"A {request.actor_role.value} cannot {request.event.value} a booking",
                code="NOT_ALLOWED",
                details={"booking_id": booking.id, "event": request.event.value},
            )
        if request.actor_role == ActorRole.REQUESTER and request.actor_id != booking.requester_id:
            raise ForbiddenException("Not your booking", code="NOT_ALLOWED")
        if request.actor_role == ActorRole.PARTNER and request.actor_id != booking.partner_id:
            raise ForbiddenException("Not your booking", code="NOT_ALLOWED")

    def preflight(self, booking: Booking, request: TransitionRequest) -> BookingStatus:
        """Resolve the target and authorize the actor, without touching anything."""
        target = resolve_transition(booking.id, booking.status_enum, request.event)
        self.authorize(booking, request)
        return target

    # Guards

    def _check_guards(
        self, booking: Booking, request: TransitionRequest, now: datetime
    ) -> Optional[str]:
        """Raise on a failed guard. Returns the normalized reason."""
        event = request.event
        reason = (request.reason or "").strip() or None
        if reason is not None and len(reason) > MAX_REASON_LENGTH:
            raise ValidationException(
                f"Reason cannot exceed {MAX_REASON_LENGTH} characters", code="REASON_TOO_LONG"
            )

        if event == BookingEvent.PAY:
            record = self.escrow.get_record(booking.id)
            if record is None or record.state != EscrowState.HELD.value:
                raise BusinessRuleException(
                    "Payment has not been acknowledged by the ledger",
                    code="PAYMENT_NOT_HELD",
                    details={
                        "booking_id": booking.id,
                        "escrow_state": record.state if record else None,
                    },
                )

        elif event == BookingEvent.START:
            if now < booking.starts_at:
                raise BusinessRuleException(
                    "Booking cannot start before its start time",
                    code="BOOKING_NOT_STARTED",
                    details={"starts_at": booking.starts_at.isoformat()},
                )

        elif event == BookingEvent.COMPLETE:
            participant_ok = request.confirmed_by_participant and request.actor_role in (
                ActorRole.REQUESTER,
                ActorRole.PARTNER,
            )
            if now < booking.ends_at and not participant_ok:
                raise BusinessRuleException(
                    "Booking cannot complete before its end time",
                    code="BOOKING_NOT_ENDED",
                    details={"ends_at": booking.ends_at.isoformat()},
                )

        elif event == BookingEvent.CANCEL:
            if reason is None:
                raise ValidationException(
                    "A cancellation reason is required", code="REASON_REQUIRED"
                )
            participant = request.actor_role in (ActorRole.REQUESTER, ActorRole.PARTNER)
            if participant and booking.status_enum in _NOTICE_WINDOW_STATUSES:
                notice = settings.cancellation_notice_hours
                hours_left = (booking.starts_at - now).total_seconds() / 3600
                if hours_left < notice:
                    raise BusinessRuleException(
                        f"Bookings cannot be cancelled less than {notice} hours before start",
                        code="CANCELLATION_WINDOW_CLOSED",
                        details={"hours_until_start": round(hours_left, 2)},
                    )

        elif event == BookingEvent.DISPUTE:
            record = self.escrow.get_record(booking.id)
            if record is not None and record.state == EscrowState.RELEASED.value:
                raise BusinessRuleException(
                    "Funds were already released; the dispute window is closed",
                    code="DISPUTE_WINDOW_CLOSED",
                    details={"booking_id": booking.id},
                )

        return reason

    # Apply

    def apply(self, booking: Booking, request: TransitionRequest) -> Booking:
        """
        Validate and apply one transition inside the caller's transaction.

        Raises AlreadyInStateException, InvalidStatusTransitionException, a
        guard failure, or StaleStateException when a concurrent writer moved
        the booking first.
        """
        current = booking.status_enum
        now = self.clock.now()
        try:
            target = self.preflight(booking, request)
            reason = self._check_guards(booking, request, now)
        except Exception:
            prometheus_metrics.record_booking_transition(
                request.event.value, current.value, "rejected"
            )
            raise

        values = {_STAMP_FIELDS[target]: now, "updated_at": now}
        if target == BookingStatus.CANCELLED:
            values["cancelled_by_id"] = request.actor_id
            values["cancellation_reason"] = reason

        if not self.repository.transition_status(booking.id, current, target, **values):
            prometheus_metrics.record_booking_transition(
                request.event.value, target.value, "stale"
            )
            self.repository.refresh(booking)
            raise StaleStateException("Booking", booking.id, current.value)

        self.repository.add_history(
            booking_id=booking.id,
            from_status=current.value,
            to_status=target.value,
            event=request.event.value,
            actor_id=request.actor_id,
            actor_role=request.actor_role.value,
            reason=reason,
            created_at=now,
        )
        self._run_side_effect(booking, target, now)

        prometheus_metrics.record_booking_transition(request.event.value, target.value, "applied")
        self.logger.info(
            "Booking transitioned",
            extra={
                "booking_id": booking.id,
                "booking_code": booking.code,
                "from_status": current.value,
                "to_status": target.value,
                "actor_role": request.actor_role.value,
            },
        )
        return booking

    def _run_side_effect(self, booking: Booking, target: BookingStatus, now: datetime) -> None:
        if target == BookingStatus.CONFIRMED:
            # Raises SlotHoldExpiredException if the grace period ran out
            if booking.slot_hold_token:
                self.slot_registry.confirm(booking.slot_hold_token)
        elif target == BookingStatus.COMPLETED:
            self.escrow.schedule_release(booking.id, self.escrow.release_time_for(now))
        elif target == BookingStatus.CANCELLED:
            if booking.slot_id:
                self.slot_registry.release(booking.slot_id, booking.slot_hold_token)
        elif target == BookingStatus.DISPUTED:
            self.escrow.cancel_scheduled_release(booking.id)
