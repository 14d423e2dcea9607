"""Tests for booking and availability request/response schemas."""

from __future__ import annotations

from datetime import date, time

from pydantic import ValidationError
import pytest

from meetbook.core.enums import ActorRole, BookingEvent, BookingStatus
from meetbook.schemas.availability import SlotCreate, SlotResponse
from meetbook.schemas.booking import (
    AdminOverrideRequest,
    AdminStatsResponse,
    BookingHistoryEntry,
    BookingListResponse,
    BookingResponse,
    BookingSearchParams,
    CreateBookingRequest,
    PriceBreakdownResponse,
    TransitionBookingRequest,
)
from meetbook.services.pricing_service import compute_price


def _create_payload(**overrides):
    payload = {
        "partner_id": "partner-1",
        "service_type": "coffee_chat",
        "booking_date": "2026-01-20",
        "start_time": "14:00",
        "end_time": "17:00",
    }
    payload.update(overrides)
    return payload


class TestCreateBookingRequest:
    def test_parses_strings(self):
        request = CreateBookingRequest(**_create_payload(service_type="  coffee_chat "))

        assert request.booking_date == date(2026, 1, 20)
        assert request.start_time == time(14, 0)
        assert request.service_type == "coffee_chat"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"booking_date": "2026-01-20T14:00:00"},
            {"start_time": "2pm"},
            {"end_time": "13:00"},
            {"meeting_lat": 10.7},
            {"meeting_lat": 91, "meeting_lng": 0},
            {"unexpected": True},
            {"service_type": ""},
        ],
    )
    def test_rejects_bad_payloads(self, overrides):
        with pytest.raises(ValidationError):
            CreateBookingRequest(**_create_payload(**overrides))


class TestTransitionBookingRequest:
    def test_cancel_requires_reason(self):
        with pytest.raises(ValidationError):
            TransitionBookingRequest(event="cancel")

        request = TransitionBookingRequest(event="cancel", reason=" plans changed ")
        assert request.event == BookingEvent.CANCEL
        assert request.reason == "plans changed"

    def test_unknown_event(self):
        with pytest.raises(ValidationError):
            TransitionBookingRequest(event="teleport")


def test_admin_override_needs_a_field():
    with pytest.raises(ValidationError):
        AdminOverrideRequest()
    assert AdminOverrideRequest(admin_note="checked").admin_note == "checked"


def test_search_params_bounds():
    assert BookingSearchParams().limit == 20
    with pytest.raises(ValidationError):
        BookingSearchParams(limit=101)
    with pytest.raises(ValidationError):
        BookingSearchParams(offset=-1)


def test_price_breakdown_response_from_computation():
    response = PriceBreakdownResponse(**compute_price(500000, 2, 3, "0.15").to_dict())

    assert response.total == 1725000
    assert response.minimum_applied is True


def test_slot_create_window():
    assert SlotCreate(slot_date="2026-01-20", start_time="09:00", end_time="11:00")
    with pytest.raises(ValidationError):
        SlotCreate(slot_date="2026-01-20", start_time="11:00", end_time="09:00")


class TestResponsesFromModels:
    def test_booking_and_history(self, driver, booking_service):
        booking = driver.create()

        response = BookingResponse.model_validate(booking)
        history = [
            BookingHistoryEntry.model_validate(entry)
            for entry in booking_service.get_history(booking.id, "admin-1", ActorRole.ADMIN)
        ]

        assert response.status == BookingStatus.PENDING
        assert response.total == 1725000
        assert history[0].event == "create"
        assert history[0].from_status is None

    def test_list_and_stats(self, driver, booking_service):
        driver.create()

        listing = BookingListResponse.from_page(booking_service.search_bookings())
        stats = AdminStatsResponse(**booking_service.get_admin_stats())

        assert listing.total == 1
        assert listing.has_more is False
        assert stats.by_status[BookingStatus.PENDING] == 1

    def test_slot_response(self, db, slot_registry):
        slot = slot_registry.create_slot("partner-1", date(2026, 1, 20), time(9, 0), time(11, 0))

        assert SlotResponse.model_validate(slot).status.value == "OPEN"
