"""Tests for the booking lifecycle: the transition table, guards and side effects."""

from __future__ import annotations

from datetime import timedelta
import itertools

import pytest
from sqlalchemy import update

from meetbook.core.enums import ActorRole, BookingEvent, BookingStatus, EscrowState, SlotStatus
from meetbook.core.exceptions import (
    AlreadyInStateException,
    BusinessRuleException,
    ForbiddenException,
    InvalidStatusTransitionException,
    StaleStateException,
    ValidationException,
)
from meetbook.models.availability import AvailabilitySlot
from meetbook.models.booking import Booking
from meetbook.services.booking_state_machine import (
    TRANSITIONS,
    TransitionRequest,
    resolve_transition,
)

LEGAL = {
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

EVENT_TARGET = {
    BookingEvent.CONFIRM: BookingStatus.CONFIRMED,
    BookingEvent.PAY: BookingStatus.PAID,
    BookingEvent.START: BookingStatus.IN_PROGRESS,
    BookingEvent.COMPLETE: BookingStatus.COMPLETED,
    BookingEvent.CANCEL: BookingStatus.CANCELLED,
    BookingEvent.DISPUTE: BookingStatus.DISPUTED,
}


def test_transition_table_is_exactly_the_lifecycle():
    assert TRANSITIONS == LEGAL


@pytest.mark.parametrize(
    "current, event", list(itertools.product(list(BookingStatus), list(BookingEvent)))
)
def test_every_status_event_pair(current, event):
    if (current, event) in LEGAL:
        assert resolve_transition("b1", current, event) == LEGAL[(current, event)]
    elif EVENT_TARGET[event] == current:
        with pytest.raises(AlreadyInStateException) as exc_info:
            resolve_transition("b1", current, event)
        assert exc_info.value.code == "ALREADY_IN_STATE"
    else:
        with pytest.raises(InvalidStatusTransitionException) as exc_info:
            resolve_transition("b1", current, event)
        assert exc_info.value.code == "INVALID_STATUS"
        assert exc_info.value.details["current_status"] == current.value


@pytest.mark.parametrize(
    "terminal", [BookingStatus.CANCELLED, BookingStatus.DISPUTED]
)
def test_cancelled_and_disputed_accept_no_events(terminal):
    for event in BookingEvent:
        with pytest.raises((AlreadyInStateException, InvalidStatusTransitionException)):
            resolve_transition("b1", terminal, event)


class TestHappyPath:
    def test_full_lifecycle_records_history(self, driver, booking_service):
        booking = driver.completed()

        history = booking_service.get_history(booking.id, "requester-1", ActorRole.REQUESTER)

        assert [h.event for h in history] == ["create", "confirm", "pay", "start", "complete"]
        assert [h.to_status for h in history] == [
            "PENDING",
            "CONFIRMED",
            "PAID",
            "IN_PROGRESS",
            "COMPLETED",
        ]
        assert [h.sequence for h in history] == [1, 2, 3, 4, 5]
        assert history[0].from_status is None
        assert booking.status == BookingStatus.COMPLETED.value
        assert booking.confirmed_at and booking.paid_at and booking.started_at
        assert booking.completed_at is not None

    def test_confirm_books_the_slot(self, driver, db):
        booking = driver.create()
        driver.confirm(booking)

        assert db.get(AvailabilitySlot, booking.slot_id).status == SlotStatus.BOOKED.value

    def test_completion_schedules_release_after_dispute_window(
        self, driver, escrow_scheduler, timer
    ):
        booking = driver.completed()

        record = escrow_scheduler.get_record(booking.id)
        expected = booking.ends_at + timedelta(hours=24)
        assert record.state == EscrowState.RELEASE_SCHEDULED.value
        assert timer.armed[booking.id] == expected


class TestRejections:
    def test_illegal_event_leaves_booking_untouched(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(InvalidStatusTransitionException):
            booking_service.transition(
                booking.id, BookingEvent.START, "partner-1", ActorRole.PARTNER
            )

        history = booking_service.get_history(booking.id, "partner-1", ActorRole.PARTNER)
        assert booking.status == BookingStatus.PENDING.value
        assert len(history) == 1

    def test_pay_before_confirm_never_reaches_ledger(self, driver, booking_service, ledger):
        booking = driver.create()

        with pytest.raises(InvalidStatusTransitionException):
            driver.pay(booking)
        assert ledger.calls == []

    def test_repeated_confirm_reports_already_in_state(self, driver):
        booking = driver.create()
        driver.confirm(booking)

        with pytest.raises(AlreadyInStateException):
            driver.confirm(booking)

    def test_requester_cannot_confirm(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(ForbiddenException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.CONFIRM, "requester-1", ActorRole.REQUESTER
            )
        assert exc_info.value.code == "NOT_ALLOWED"

    def test_other_partner_cannot_confirm(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(ForbiddenException):
            booking_service.transition(
                booking.id, BookingEvent.CONFIRM, "partner-2", ActorRole.PARTNER
            )

    def test_system_cannot_dispute(self, driver, booking_service):
        booking = driver.in_progress()

        with pytest.raises(ForbiddenException):
            booking_service.transition(
                booking.id, BookingEvent.DISPUTE, "system", ActorRole.SYSTEM, "automated"
            )

    def test_unknown_event_is_a_validation_error(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(ValidationException) as exc_info:
            booking_service.transition(booking.id, "teleport", "partner-1", "partner")
        assert exc_info.value.code == "INVALID_EVENT"

    def test_cannot_start_early(self, driver, booking_service, clock):
        booking = driver.paid()
        clock.set(booking.starts_at - timedelta(minutes=1))

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.START, "partner-1", ActorRole.PARTNER
            )
        assert exc_info.value.code == "BOOKING_NOT_STARTED"

    def test_cannot_complete_early_without_participant_confirmation(
        self, driver, booking_service, clock
    ):
        booking = driver.in_progress()
        clock.advance(hours=1)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.COMPLETE, "system", ActorRole.SYSTEM
            )
        assert exc_info.value.code == "BOOKING_NOT_ENDED"

        completed = booking_service.transition(
            booking.id,
            BookingEvent.COMPLETE,
            "requester-1",
            ActorRole.REQUESTER,
            confirmed_by_participant=True,
        )
        assert completed.status == BookingStatus.COMPLETED.value


class TestCancellation:
    def test_reason_is_required(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(ValidationException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "   "
            )
        assert exc_info.value.code == "REASON_REQUIRED"

    def test_reason_length_is_limited(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(ValidationException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "x" * 501
            )
        assert exc_info.value.code == "REASON_TOO_LONG"

    def test_participant_cannot_cancel_inside_notice_window(self, driver, booking_service, clock):
        booking = driver.paid()
        clock.set(booking.starts_at - timedelta(hours=2))

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "sick"
            )
        assert exc_info.value.code == "CANCELLATION_WINDOW_CLOSED"

    def test_admin_may_cancel_inside_notice_window(
        self, driver, booking_service, clock, ledger
    ):
        booking = driver.paid()
        clock.set(booking.starts_at - timedelta(hours=2))

        cancelled = booking_service.transition(
            booking.id, BookingEvent.CANCEL, "admin-1", ActorRole.ADMIN, "venue closed"
        )

        assert cancelled.status == BookingStatus.CANCELLED.value
        assert cancelled.cancelled_by_id == "admin-1"
        assert cancelled.cancellation_reason == "venue closed"
        assert len(ledger.calls_for("refund")) == 1

    def test_pending_booking_can_be_cancelled_late(self, driver, booking_service, clock):
        booking = driver.create()
        clock.set(booking.starts_at - timedelta(hours=1))

        cancelled = booking_service.transition(
            booking.id, BookingEvent.CANCEL, "partner-1", ActorRole.PARTNER, "cannot make it"
        )

        assert cancelled.status == BookingStatus.CANCELLED.value


class TestDisputes:
    def test_dispute_during_meetup_keeps_funds_held(
        self, driver, booking_service, escrow_scheduler
    ):
        booking = driver.in_progress()

        disputed = booking_service.transition(
            booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "no show"
        )

        assert disputed.status == BookingStatus.DISPUTED.value
        assert escrow_scheduler.get_record(booking.id).state == EscrowState.HELD.value

    def test_dispute_after_completion_freezes_release(
        self, driver, booking_service, escrow_scheduler, clock, ledger, timer
    ):
        booking = driver.completed()

        booking_service.transition(
            booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "cut short"
        )
        clock.advance(hours=30)
        escrow_scheduler.sweep()
        escrow_scheduler.fire_release(booking.id)

        record = escrow_scheduler.get_record(booking.id)
        assert record.release_frozen_at is not None
        assert record.state == EscrowState.RELEASE_SCHEDULED.value
        assert ledger.calls_for("release") == []
        assert booking.id not in timer.armed

    def test_dispute_after_release_is_rejected(
        self, driver, booking_service, escrow_scheduler, clock
    ):
        booking = driver.completed()
        clock.advance(hours=24)
        escrow_scheduler.fire_release(booking.id)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "late"
            )
        assert exc_info.value.code == "DISPUTE_WINDOW_CLOSED"


class TestConcurrentWriters:
    def test_lost_race_raises_stale_state(self, driver, booking_service, db):
        booking = driver.create()
        db.execute(
            update(Booking)
            .where(Booking.id == booking.id)
            .values(status=BookingStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        assert booking.status == BookingStatus.PENDING.value

        request = TransitionRequest(
            event=BookingEvent.CONFIRM, actor_id="partner-1", actor_role=ActorRole.PARTNER
        )
        with pytest.raises(StaleStateException) as exc_info:
            booking_service.state_machine.apply(booking, request)

        assert exc_info.value.code == "STALE_STATE"
        assert booking.status == BookingStatus.CANCELLED.value
        db.rollback()

    def test_dispute_during_release_call_is_rejected(
        self, driver, booking_service, escrow_scheduler, clock, ledger
    ):
        booking = driver.completed()
        clock.advance(hours=24)
        rejected = []

        def dispute(method, reference):
            try:
                booking_service.transition(
                    booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "late"
                )
            except StaleStateException as exc:
                rejected.append(exc.code)

        ledger.on_call = dispute
        result = escrow_scheduler.fire_release(booking.id)

        record = escrow_scheduler.get_record(booking.id)
        assert rejected == ["STALE_STATE"]
        assert result.acknowledged is True
        assert record.state == EscrowState.RELEASED.value
        assert record.release_frozen_at is None
        assert record.needs_attention is False
        assert booking.status == BookingStatus.COMPLETED.value
        assert len(ledger.calls_for("release")) == 1

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.transition(
                booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "later"
            )
        assert exc_info.value.code == "DISPUTE_WINDOW_CLOSED"

    def test_dispute_freezes_release_after_failed_attempt(
        self, driver, booking_service, escrow_scheduler, clock, ledger
    ):
        booking = driver.completed()
        clock.advance(hours=24)
        ledger.fail_next("release")
        escrow_scheduler.fire_release(booking.id)

        disputed = booking_service.transition(
            booking.id, BookingEvent.DISPUTE, "requester-1", ActorRole.REQUESTER, "cut short"
        )
        clock.advance(hours=1)
        escrow_scheduler.sweep()

        record = escrow_scheduler.get_record(booking.id)
        assert disputed.status == BookingStatus.DISPUTED.value
        assert record.release_frozen_at is not None
        assert record.state == EscrowState.RELEASE_SCHEDULED.value
        assert len(ledger.calls_for("release")) == 1
