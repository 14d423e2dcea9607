"""Tests for BookingService: creation, cancellation flows, queries, stats and upkeep."""

from __future__ import annotations

from datetime import date, time, timedelta
from decimal import Decimal
import re

import pytest

from meetbook.core.config import settings
from meetbook.core.enums import (
    ActorRole,
    BookingEvent,
    BookingStatus,
    EscrowState,
    LedgerInstructionKind,
    SlotStatus,
)
from meetbook.core.exceptions import (
    BusinessRuleException,
    CannotBookSelfException,
    ForbiddenException,
    InsufficientHoursException,
    NotFoundException,
    SettlementPendingException,
    SlotHoldExpiredException,
    SlotNotAvailableException,
    StaleStateException,
    ValidationException,
)
from meetbook.models.availability import AvailabilitySlot
from meetbook.models.booking import Booking
from meetbook.services.booking_service import HOLD_EXPIRED_REASON, requested_hours_between


class TestCreateBooking:
    def test_creates_pending_booking_with_price_snapshot(self, driver, db):
        booking = driver.create()

        assert booking.status == BookingStatus.PENDING.value
        assert re.fullmatch(r"BK-[A-Z0-9]{8}", booking.code)
        assert booking.hourly_rate == 500000
        assert booking.actual_hours == Decimal("3")
        assert booking.minimum_applied is False
        assert (booking.subtotal, booking.fee, booking.total) == (1500000, 225000, 1725000)
        assert booking.currency == "VND"

        slot = db.get(AvailabilitySlot, booking.slot_id)
        assert slot.status == SlotStatus.HELD.value
        assert slot.hold_token == booking.slot_hold_token

    def test_short_booking_is_billed_at_partner_minimum(self, driver):
        booking = driver.create(start=time(14, 0), end=time(16, 0))

        assert booking.requested_hours == Decimal("2")
        assert booking.actual_hours == Decimal("3")
        assert booking.minimum_applied is True
        assert booking.total == 1725000

    def test_partner_without_minimum_uses_platform_default(self, driver):
        booking = driver.create(partner_id="partner-2", start=time(9, 0), end=time(10, 0))

        assert booking.actual_hours == Decimal("1")
        assert booking.total == 230000

    def test_self_booking_is_rejected(self, driver):
        with pytest.raises(CannotBookSelfException) as exc_info:
            driver.create(requester_id="partner-1")
        assert exc_info.value.code == "CANNOT_BOOK_SELF"

    def test_below_minimum_duration_is_rejected(self, driver):
        with pytest.raises(InsufficientHoursException) as exc_info:
            driver.create(start=time(14, 0), end=time(14, 30))
        assert exc_info.value.code == "INSUFFICIENT_HOURS"
        assert exc_info.value.details["provided_hours"] == 0.5

    def test_over_maximum_duration_is_rejected(self, driver):
        with pytest.raises(ValidationException) as exc_info:
            driver.create(start=time(8, 0), end=time(17, 30))
        assert exc_info.value.code == "EXCEEDS_MAX_HOURS"

    @pytest.mark.parametrize(
        "booking_date, code",
        [(date(2026, 1, 9), "DATE_IN_PAST"), (date(2026, 3, 1), "DATE_TOO_FAR")],
    )
    def test_date_bounds(self, driver, booking_date, code):
        with pytest.raises(ValidationException) as exc_info:
            driver.create(booking_date=booking_date)
        assert exc_info.value.code == code

    def test_unknown_partner(self, driver):
        with pytest.raises(NotFoundException) as exc_info:
            driver.create(partner_id="nobody")
        assert exc_info.value.code == "PARTNER_NOT_FOUND"

    def test_unavailable_partner(self, driver):
        with pytest.raises(BusinessRuleException) as exc_info:
            driver.create(partner_id="partner-away")
        assert exc_info.value.code == "PARTNER_UNAVAILABLE"

    def test_overlapping_request_is_rejected_without_side_effects(self, driver, db):
        first = driver.create()

        with pytest.raises(SlotNotAvailableException) as exc_info:
            driver.create(requester_id="requester-2", start=time(15, 0), end=time(16, 30))

        assert exc_info.value.code == "SLOT_NOT_AVAILABLE"
        assert exc_info.value.details["conflicting_slot_ids"] == [first.slot_id]
        assert db.query(Booking).count() == 1
        assert db.query(AvailabilitySlot).count() == 1

    def test_partial_coordinates_are_rejected(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking(
                "requester-1",
                "partner-1",
                "coffee_chat",
                date(2026, 1, 20),
                time(14, 0),
                time(17, 0),
                meeting_lat=10.77,
            )
        assert exc_info.value.code == "INVALID_COORDINATES"

    def test_meeting_details_are_stored(self, booking_service):
        booking = booking_service.create_booking(
            "requester-1",
            "partner-1",
            " coffee_chat ",
            date(2026, 1, 20),
            time(14, 0),
            time(17, 0),
            meeting_location="District 1",
            meeting_lat=10.77,
            meeting_lng=106.70,
            requester_note="Window seat please",
        )

        assert booking.service_type == "coffee_chat"
        assert booking.meeting_location == "District 1"
        assert booking.requester_note == "Window seat please"

    def test_only_written_note_columns_exist(self):
        columns = Booking.__table__.columns
        notes = {column.name for column in columns if column.name.endswith("_note")}

        assert notes == {"requester_note", "admin_note"}

    def test_note_length_is_limited(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking(
                "requester-1",
                "partner-1",
                "coffee_chat",
                date(2026, 1, 20),
                time(14, 0),
                time(17, 0),
                requester_note="x" * 1001,
            )
        assert exc_info.value.code == "NOTE_TOO_LONG"


def test_requested_hours_between():
    assert requested_hours_between(time(14, 0), time(16, 20)) == Decimal("2.33")
    assert requested_hours_between(time(9, 15), time(10, 45)) == Decimal("1.50")


class TestCancellationRoundTrip:
    def test_cancel_pending_frees_slot_without_refund(self, driver, booking_service, db, ledger):
        booking = driver.create()

        booking_service.transition(
            booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "plans changed"
        )

        assert booking.status == BookingStatus.CANCELLED.value
        assert db.get(AvailabilitySlot, booking.slot_id).status == SlotStatus.OPEN.value
        assert ledger.calls == []

    def test_cancel_paid_refunds_exactly_once_and_reopens_slot(
        self, driver, booking_service, escrow_scheduler, db, ledger
    ):
        booking = driver.paid()

        booking_service.transition(
            booking.id, BookingEvent.CANCEL, "partner-1", ActorRole.PARTNER, "travelling"
        )
        booking_service.run_escrow_sweep()

        assert db.get(AvailabilitySlot, booking.slot_id).status == SlotStatus.OPEN.value
        assert escrow_scheduler.get_record(booking.id).state == EscrowState.REFUNDED.value
        assert len(ledger.calls_for("refund")) == 1
        assert ledger.calls_for("refund")[0]["amount"] == booking.total

        rebooked = driver.create(requester_id="requester-2")
        assert rebooked.slot_id == booking.slot_id

    def test_failed_refund_is_retried_by_sweep(
        self, driver, booking_service, escrow_scheduler, clock, ledger
    ):
        booking = driver.paid()
        ledger.fail_next("refund")

        booking_service.transition(
            booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "ill"
        )
        assert escrow_scheduler.get_record(booking.id).state == EscrowState.HELD.value

        clock.advance(seconds=31)
        report = booking_service.run_escrow_sweep()

        assert report.refunds_acknowledged == [booking.id]
        assert escrow_scheduler.get_record(booking.id).state == EscrowState.REFUNDED.value
        assert len({c["reference"] for c in ledger.calls_for("refund")}) == 1

    def test_cancel_with_unacknowledged_hold_abandons_it(
        self, driver, booking_service, escrow_scheduler, clock, ledger
    ):
        booking = driver.create()
        driver.confirm(booking)
        ledger.fail_next("hold")
        with pytest.raises(SettlementPendingException):
            driver.pay(booking)

        booking_service.transition(
            booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "changed mind"
        )
        clock.advance(minutes=5)
        booking_service.run_escrow_sweep()

        record = escrow_scheduler.get_record(booking.id)
        assert record.state == EscrowState.NONE.value
        assert record.pending_instruction is None
        assert record.refund_requested_at is None
        assert len(ledger.calls_for("hold")) == 1
        assert ledger.calls_for("refund") == []

    def test_cancel_during_hold_call_refunds_the_late_hold(
        self, driver, booking_service, escrow_scheduler, ledger
    ):
        booking = driver.create()
        driver.confirm(booking)
        cancelled = []
        ledger.on_call = lambda method, reference: cancelled.append(
            booking_service.transition(
                booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "changed mind"
            ).status
        )

        with pytest.raises(StaleStateException):
            driver.pay(booking)

        record = escrow_scheduler.get_record(booking.id)
        assert cancelled == [BookingStatus.CANCELLED.value]
        assert record.state == EscrowState.HELD.value
        assert record.pending_instruction == LedgerInstructionKind.REFUND.value
        assert record.refund_requested_at is None

        report = booking_service.run_escrow_sweep()

        holds, refunds = ledger.calls_for("hold"), ledger.calls_for("refund")
        assert report.refunds_acknowledged == [booking.id]
        assert escrow_scheduler.get_record(booking.id).state == EscrowState.REFUNDED.value
        assert booking.status == BookingStatus.CANCELLED.value
        assert len(holds) == 1
        assert len(refunds) == 1
        assert refunds[0]["hold_reference"] == holds[0]["reference"]


class TestPayment:
    def test_unacknowledged_hold_keeps_booking_confirmed(self, driver, booking_service, ledger):
        booking = driver.create()
        driver.confirm(booking)
        ledger.fail_next("hold")

        with pytest.raises(SettlementPendingException) as exc_info:
            driver.pay(booking)

        assert exc_info.value.code == "SETTLEMENT_PENDING"
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_sweep_pays_booking_once_hold_is_acknowledged(
        self, driver, booking_service, clock, ledger
    ):
        booking = driver.create()
        driver.confirm(booking)
        ledger.fail_next("hold")
        with pytest.raises(SettlementPendingException):
            driver.pay(booking)

        clock.advance(seconds=30)
        report = booking_service.run_escrow_sweep()

        history = booking_service.get_history(booking.id, "admin-1", ActorRole.ADMIN)
        assert report.holds_acknowledged == [booking.id]
        assert booking.status == BookingStatus.PAID.value
        assert history[-1].actor_role == ActorRole.SYSTEM.value

    def test_retrying_pay_after_pending_reuses_reference(self, driver, ledger):
        booking = driver.create()
        driver.confirm(booking)
        ledger.fail_next("hold")
        with pytest.raises(SettlementPendingException):
            driver.pay(booking)

        paid = driver.pay(booking)

        holds = ledger.calls_for("hold")
        assert paid.status == BookingStatus.PAID.value
        assert len(holds) == 2
        assert holds[0]["reference"] == holds[1]["reference"]


class TestHoldExpiry:
    def test_confirm_after_expiry_cancels_booking(self, driver, db, clock):
        booking = driver.create()
        clock.advance(minutes=61)

        with pytest.raises(SlotHoldExpiredException):
            driver.confirm(booking)

        db.refresh(booking)
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.cancellation_reason == HOLD_EXPIRED_REASON
        assert db.get(AvailabilitySlot, booking.slot_id).status == SlotStatus.OPEN.value

    def test_expire_stale_holds_cancels_pending_bookings(
        self, driver, booking_service, db, clock
    ):
        first = driver.create()
        second = driver.create(start=time(18, 0), end=time(20, 0))
        kept = driver.create(start=time(9, 0), end=time(11, 0))
        driver.confirm(kept)
        clock.advance(minutes=61)

        assert booking_service.expire_stale_holds() == 2
        assert booking_service.expire_stale_holds() == 0

        for booking in (first, second):
            db.refresh(booking)
            assert booking.status == BookingStatus.CANCELLED.value
            assert booking.cancelled_by_id == "system"
        db.refresh(kept)
        assert kept.status == BookingStatus.CONFIRMED.value


class TestQueries:
    def test_participants_and_admins_can_view(self, driver, booking_service):
        booking = driver.create()

        assert booking_service.get_booking(booking.id, "requester-1", ActorRole.REQUESTER)
        assert booking_service.get_booking(booking.id, "partner-1", ActorRole.PARTNER)
        assert booking_service.get_booking(booking.id, "admin-1", ActorRole.ADMIN)
        with pytest.raises(ForbiddenException):
            booking_service.get_booking(booking.id, "stranger", ActorRole.REQUESTER)

    def test_lookup_by_code_is_case_insensitive(self, driver, booking_service):
        booking = driver.create()

        assert booking_service.get_booking_by_code(booking.code.lower()).id == booking.id
        with pytest.raises(NotFoundException):
            booking_service.get_booking_by_code("BK-NOPE0000")

    def test_requester_and_partner_listings(self, driver, booking_service):
        early = driver.create(booking_date=date(2026, 1, 15))
        late = driver.create(booking_date=date(2026, 1, 25))
        other = driver.create(requester_id="requester-2", partner_id="partner-2")

        mine = booking_service.list_requester_bookings("requester-1")
        partner = booking_service.list_partner_bookings("partner-1", upcoming_only=True)

        assert [b.id for b in mine] == [late.id, early.id]
        assert [b.id for b in partner] == [early.id, late.id]
        assert other.id not in [b.id for b in partner]

    def test_invalid_pagination(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.list_requester_bookings("requester-1", limit=500)
        assert exc_info.value.code == "INVALID_PAGINATION"

    def test_search_with_filters_and_paging(self, driver, booking_service):
        for day in (15, 16, 17):
            driver.create(booking_date=date(2026, 1, day))
        cancelled = driver.create(booking_date=date(2026, 1, 18))
        booking_service.transition(
            cancelled.id, BookingEvent.CANCEL, "admin-1", ActorRole.ADMIN, "duplicate"
        )

        page = booking_service.search_bookings(
            statuses=[BookingStatus.PENDING], partner_id="partner-1", limit=2
        )
        filtered = booking_service.search_bookings(
            date_from=date(2026, 1, 17), date_to=date(2026, 1, 18)
        )

        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_more is True
        assert filtered.total == 2

    def test_search_rejects_inverted_dates(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.search_bookings(
                date_from=date(2026, 1, 20), date_to=date(2026, 1, 10)
            )
        assert exc_info.value.code == "INVALID_DATE_RANGE"


class TestStats:
    def test_requester_and_partner_stats(self, driver, booking_service, clock):
        cancelled = driver.create(booking_date=date(2026, 1, 21))
        booking_service.transition(
            cancelled.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "no"
        )
        driver.create(booking_date=date(2026, 1, 22))
        completed = driver.completed()

        requester = booking_service.get_requester_stats("requester-1")
        partner = booking_service.get_partner_stats("partner-1")

        assert requester == {
            "total_bookings": 3,
            "completed": 1,
            "cancelled": 1,
            "upcoming": 1,
            "total_spent": completed.total,
        }
        assert partner["pending"] == 1
        assert partner["total_earned"] == completed.subtotal

    def test_admin_stats(self, driver, booking_service, clock):
        completed = driver.completed()
        driver.create(booking_date=date(2026, 1, 28))

        stats = booking_service.get_admin_stats()

        assert stats["total_bookings"] == 2
        assert stats["by_status"]["COMPLETED"] == 1
        assert stats["by_status"]["PENDING"] == 1
        assert stats["created_today"] == 1
        assert stats["monthly_revenue"] == completed.fee
        assert stats["escrow_needing_attention"] == 0


class TestAdminOverride:
    def test_amends_cancelled_booking(self, driver, booking_service):
        booking = driver.create()
        booking_service.transition(
            booking.id, BookingEvent.CANCEL, "requester-1", ActorRole.REQUESTER, "typo"
        )

        amended = booking_service.admin_override(
            booking.id, "admin-1", reason="Requester was ill", admin_note="Refund manually checked"
        )

        assert amended.cancellation_reason == "Requester was ill"
        assert amended.admin_note == "Refund manually checked"
        assert amended.status == BookingStatus.CANCELLED.value

    def test_active_booking_cannot_be_amended(self, driver, booking_service):
        booking = driver.create()

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.admin_override(booking.id, "admin-1", admin_note="x")
        assert exc_info.value.code == "BOOKING_NOT_TERMINAL"

    def test_reason_only_for_cancelled(self, driver, booking_service):
        booking = driver.completed()

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.admin_override(booking.id, "admin-1", reason="n/a")
        assert exc_info.value.code == "NOT_CANCELLED"

    def test_empty_override(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.admin_override("whatever", "admin-1")
        assert exc_info.value.code == "EMPTY_OVERRIDE"


def test_release_due_at_follows_completion(driver, booking_service):
    booking = driver.create()
    assert booking_service.release_due_at(booking) is None

    booking_service.transition(
        booking.id, BookingEvent.CANCEL, "admin-1", ActorRole.ADMIN, "test"
    )
    completed = driver.completed(start=time(9, 0), end=time(12, 0))

    assert booking_service.release_due_at(completed) == completed.ends_at + timedelta(
        hours=settings.escrow_release_delay_hours
    )
