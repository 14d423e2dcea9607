"""Ledger service integration client.

The ledger is the external account service that actually moves money. It is
instructed to hold, release or refund an amount and answers per instruction.
Every instruction names the booking it settles and carries a reference (our
transaction code) that the ledger uses as its idempotency key, so a retried
instruction is never applied twice. Releases and refunds also cite the
reference of the hold they draw from.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Protocol
import uuid

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class LedgerAck:
    """Outcome of one ledger instruction."""

    ok: bool
    instruction_id: str | None = None
    error: str | None = None
    retryable: bool = True

    @classmethod
    def success(cls, instruction_id: str) -> "LedgerAck":
        return cls(ok=True, instruction_id=instruction_id)

    @classmethod
    def failure(cls, error: str, *, retryable: bool = True) -> "LedgerAck":
        return cls(ok=False, error=error, retryable=retryable)


class LedgerClient(Protocol):
    def hold(
        self, amount: int, currency: str, reference: str, *, booking_id: str
    ) -> LedgerAck: ...

    def release(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck: ...

    def refund(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck: ...


class HttpLedgerClient:
    """HTTP client for the ledger REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | SecretStr,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        self._timeout = timeout
        self._transport = transport

    def _post(
        self,
        path: str,
        *,
        amount: int,
        currency: str,
        reference: str,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        """Send one instruction; never raises for ledger or network failures."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Idempotency-Key": reference,
        }
        body: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "booking_id": booking_id,
        }
        if hold_reference is not None:
            body["hold_reference"] = hold_reference

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(url, headers=headers, json=body)
        except httpx.TransportError as exc:
            logger.warning(
                "Ledger unreachable for %s %s: %s",
                path,
                reference,
                exc,
                extra={"event": "ledger_unreachable", "reference": reference},
            )
            return LedgerAck.failure(f"Ledger unreachable: {exc}", retryable=True)

        if response.status_code >= 400:
            message = _error_message(response)
            retryable = (
                response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS_CODES
            )
            log = logger.warning if retryable else logger.error
            log(
                "Ledger error %s for %s %s: %s",
                response.status_code,
                path,
                reference,
                message,
                extra={
                    "event": "ledger_error",
                    "reference": reference,
                    "status_code": response.status_code,
                },
            )
            return LedgerAck.failure(
                f"Ledger error {response.status_code}: {message}", retryable=retryable
            )

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        instruction_id = None
        if isinstance(payload, dict):
            instruction_id = payload.get("id") or payload.get("instruction_id")
        return LedgerAck.success(str(instruction_id or reference))

    def hold(self, amount: int, currency: str, reference: str, *, booking_id: str) -> LedgerAck:
        return self._post(
            "holds", amount=amount, currency=currency, reference=reference, booking_id=booking_id
        )

    def release(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        return self._post(
            "releases",
            amount=amount,
            currency=currency,
            reference=reference,
            booking_id=booking_id,
            hold_reference=hold_reference,
        )

    def refund(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        return self._post(
            "refunds",
            amount=amount,
            currency=currency,
            reference=reference,
            booking_id=booking_id,
            hold_reference=hold_reference,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        parsed = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(parsed, dict):
        return str(parsed.get("message") or parsed.get("error") or parsed)[:500]
    return response.text[:500]


class FakeLedgerClient:
    """In-memory ledger for development and non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._acks: dict[str, LedgerAck] = {}
        self._errors: dict[str, LedgerAck] = {}

    @property
    def calls(self) -> list[dict[str, Any]]:
        return list(self._calls)

    def set_error(self, method: str, ack: LedgerAck) -> None:
        """Inject a method-specific failure for deterministic failure testing."""
        self._errors[method] = ack

    def clear_errors(self) -> None:
        self._errors.clear()

    def _record(
        self,
        method: str,
        amount: int,
        currency: str,
        reference: str,
        booking_id: str,
        hold_reference: str | None,
    ) -> None:
        self._calls.append(
            {
                "method": method,
                "amount": amount,
                "currency": currency,
                "reference": reference,
                "booking_id": booking_id,
                "hold_reference": hold_reference,
            }
        )

    def _apply(
        self,
        method: str,
        amount: int,
        currency: str,
        reference: str,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        self._record(method, amount, currency, reference, booking_id, hold_reference)
        error = self._errors.get(method)
        if error is not None:
            return error
        # Same reference, same answer
        if reference not in self._acks:
            self._acks[reference] = LedgerAck.success(f"fake_{method}_{uuid.uuid4().hex[:12]}")
        return self._acks[reference]

    def hold(self, amount: int, currency: str, reference: str, *, booking_id: str) -> LedgerAck:
        return self._apply("hold", amount, currency, reference, booking_id)

    def release(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        return self._apply("release", amount, currency, reference, booking_id, hold_reference)

    def refund(
        self,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: str | None = None,
    ) -> LedgerAck:
        return self._apply("refund", amount, currency, reference, booking_id, hold_reference)


def build_ledger_client() -> LedgerClient:
    """Ledger client selected by settings."""
    from ..core.config import settings

    if settings.ledger_fake:
        return FakeLedgerClient()
    return HttpLedgerClient(
        base_url=settings.ledger_base_url,
        api_key=settings.ledger_api_key,
        timeout=settings.ledger_timeout_seconds,
    )
