"""Tests for the ledger HTTP client and its in-memory fake."""

from __future__ import annotations

import json

import httpx
from pydantic import SecretStr
import pytest

from meetbook.core.config import settings
from meetbook.integrations.ledger_client import (
    FakeLedgerClient,
    HttpLedgerClient,
    LedgerAck,
    build_ledger_client,
)


def _client(handler) -> HttpLedgerClient:
    return HttpLedgerClient(
        base_url="https://ledger.test/v1/",
        api_key=SecretStr("sk_test"),
        transport=httpx.MockTransport(handler),
    )


def test_successful_instruction_sends_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "led_123"})

    ack = _client(handler).release(
        1725000, "VND", "TXN-ABCDEFGHIJ", booking_id="bk-1", hold_reference="TXN-HOLD000001"
    )

    assert ack == LedgerAck.success("led_123")
    request = seen[0]
    assert request.url == "https://ledger.test/v1/releases"
    assert request.headers["Idempotency-Key"] == "TXN-ABCDEFGHIJ"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert json.loads(request.content) == {
        "amount": 1725000,
        "currency": "VND",
        "reference": "TXN-ABCDEFGHIJ",
        "booking_id": "bk-1",
        "hold_reference": "TXN-HOLD000001",
    }


def test_hold_body_names_booking_without_hold_reference():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"id": "led_1"})

    _client(handler).hold(1725000, "VND", "TXN-HOLD000001", booking_id="bk-1")

    assert bodies == [
        {
            "amount": 1725000,
            "currency": "VND",
            "reference": "TXN-HOLD000001",
            "booking_id": "bk-1",
        }
    ]


@pytest.mark.parametrize(
    "method, path",[("hold", "/v1/holds"), ("refund", "/v1/refunds"), ("release", "/v1/releases")]
)
def test_each_instruction_has_its_endpoint(method, path):
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"instruction_id": "x"})

    getattr(_client(handler), method)(100, "USD", "TXN-1", booking_id="bk-1")

    assert paths == [path]


def test_missing_instruction_id_falls_back_to_reference():
    ack = _client(lambda request: httpx.Response(200, text="ok")).hold(
        1, "VND", "TXN-2", booking_id="bk-1"
    )

    assert ack.ok is True
    assert ack.instruction_id == "TXN-2"


@pytest.mark.parametrize(
    "status_code, retryable", [(500, True), (503, True), (429, True), (400, False), (409, False)]
)
def test_error_responses_become_failures(status_code, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"message": "nope"})

    ack = _client(handler).hold(1, "VND", "TXN-3", booking_id="bk-1")

    assert ack.ok is False
    assert ack.retryable is retryable
    assert f"Ledger error {status_code}: nope" == ack.error


def test_network_errors_are_retryable_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    ack = _client(handler).refund(1, "VND", "TXN-4", booking_id="bk-1")

    assert ack.ok is False
    assert ack.retryable is True
    assert "unreachable" in ack.error


class TestFakeLedger:
    def test_same_reference_same_answer(self):
        ledger = FakeLedgerClient()

        first = ledger.release(10, "VND", "TXN-A", booking_id="bk-1")
        second = ledger.release(10, "VND", "TXN-A", booking_id="bk-1")

        assert first == second
        assert len(ledger.calls) == 2
        assert ledger.calls[0]["booking_id"] == "bk-1"

    def test_injected_errors(self):
        ledger = FakeLedgerClient()
        ledger.set_error("hold", LedgerAck.failure("down"))

        assert ledger.hold(10, "VND", "TXN-B", booking_id="bk-1").ok is False
        ledger.clear_errors()
        assert ledger.hold(10, "VND", "TXN-B", booking_id="bk-1").ok is True


def test_settings_select_the_client(monkeypatch):
    monkeypatch.setattr(settings, "ledger_fake", True)
    assert isinstance(build_ledger_client(), FakeLedgerClient)

    monkeypatch.setattr(settings, "ledger_fake", False)
    assert isinstance(build_ledger_client(), HttpLedgerClient)
