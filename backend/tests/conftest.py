# backend/tests/conftest.py
"""
Shared fixtures for the Meetbook test suite.

Every test gets a fresh in-memory SQLite database, a frozen clock, a
recording ledger and a recording release timer, so schedules and retries
can be driven deterministically without sleeping.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import os
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Must be set before meetbook modules read settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LEDGER_FAKE", "true")
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("CI", "1")

import pytest  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from meetbook.core.enums import ActorRole, BookingEvent  # noqa: E402
from meetbook.database import Base, create_engine_for_url  # noqa: E402
from meetbook.integrations.ledger_client import FakeLedgerClient, LedgerAck  # noqa: E402
import meetbook.models  # noqa: E402,F401
from meetbook.models.booking import Booking  # noqa: E402
from meetbook.services.booking_service import BookingService  # noqa: E402
from meetbook.services.escrow_scheduler import EscrowScheduler  # noqa: E402
from meetbook.services.partner_directory import PartnerTerms, StaticPartnerDirectory  # noqa: E402
from meetbook.services.slot_registry import SlotRegistry  # noqa: E402

UTC = timezone.utc
START = datetime(2026, 1, 10, 9, 0, tzinfo=UTC)
BOOKING_DATE = date(2026, 1, 20)

REQUESTER_ID = "requester-1"
PARTNER_ID = "partner-1"
ADMIN_ID = "admin-1"


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class RecordingLedger(FakeLedgerClient):
    """Fake ledger with queued one-shot failures and a per-call hook."""

    def __init__(self) -> None:
        super().__init__()
        self._queued: Dict[str, List[Any]] = {}
        self.on_call: Optional[Any] = None

    def fail_next(self, method: str, times: int = 1, *, retryable: bool = True) -> None:
        ack = LedgerAck.failure(f"{method} unavailable", retryable=retryable)
        self._queued.setdefault(method, []).extend([ack] * times)

    def raise_next(self, method: str, exc: Exception) -> None:
        self._queued.setdefault(method, []).append(exc)

    def calls_for(self, method: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    def _apply(
        self,
        method: str,
        amount: int,
        currency: str,
        reference: str,
        booking_id: str,
        hold_reference: Optional[str] = None,
    ) -> LedgerAck:
        if self.on_call is not None:
            hook, self.on_call = self.on_call, None
            hook(method, reference)
        queued = self._queued.get(method)
        if queued:
            outcome = queued.pop(0)
            self._record(method, amount, currency, reference, booking_id, hold_reference)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return super()._apply(method, amount, currency, reference, booking_id, hold_reference)


class RecordingTimer:
    """Release timer that remembers what it was asked to do."""

    def __init__(self) -> None:
        self.armed: Dict[str, datetime] = {}
        self.events: List[Tuple[str, str, Optional[datetime]]] = []

    def arm(self, booking_id: str, at: datetime) -> None:
        self.armed[booking_id] = at
        self.events.append(("arm", booking_id, at))

    def disarm(self, booking_id: str) -> None:
        self.armed.pop(booking_id, None)
        self.events.append(("disarm", booking_id, None))


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine_for_url("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def timer() -> RecordingTimer:
    return RecordingTimer()


@pytest.fixture
def partners() -> StaticPartnerDirectory:
    return StaticPartnerDirectory(
        {
            PARTNER_ID: PartnerTerms(PARTNER_ID, hourly_rate=500000, minimum_hours=3),
            "partner-2": PartnerTerms("partner-2", hourly_rate=200000, minimum_hours=1),
            "partner-away": PartnerTerms("partner-away", hourly_rate=100000, is_available=False),
        }
    )


@pytest.fixture
def slot_registry(db: Session, clock: FrozenClock) -> SlotRegistry:
    return SlotRegistry(db, clock)


@pytest.fixture
def escrow_scheduler(
    db: Session, ledger: RecordingLedger, clock: FrozenClock, timer: RecordingTimer
) -> EscrowScheduler:
    return EscrowScheduler(db, ledger, clock, timer)


@pytest.fixture
def booking_service(
    db: Session,
    partners: StaticPartnerDirectory,
    clock: FrozenClock,
    slot_registry: SlotRegistry,
    escrow_scheduler: EscrowScheduler,
) -> BookingService:
    return BookingService(
        db,
        partners,
        clock=clock,
        slot_registry=slot_registry,
        escrow_scheduler=escrow_scheduler,
    )




class BookingDriver:
    """Walks bookings through the lifecycle as their participants would."""

    def __init__(self, service: BookingService, clock: FrozenClock) -> None:
        self.service = service
        self.clock = clock

    def create(
        self,
        *,
        requester_id: str = REQUESTER_ID,
        partner_id: str = PARTNER_ID,
        booking_date: date = BOOKING_DATE,
        start: time = time(14, 0),
        end: time = time(17, 0),
    ) -> Booking:
        return self.service.create_booking(
            requester_id, partner_id, "coffee_chat", booking_date, start, end
        )

    def confirm(self, booking: Booking) -> Booking:
        return self.service.transition(
            booking.id, BookingEvent.CONFIRM, booking.partner_id, ActorRole.PARTNER
        )

    def pay(self, booking: Booking) -> Booking:
        return self.service.transition(
            booking.id, BookingEvent.PAY, booking.requester_id, ActorRole.REQUESTER
        )

    def paid(self, **kwargs: Any) -> Booking:
        booking = self.create(**kwargs)
        self.confirm(booking)
        return self.pay(booking)

    def in_progress(self, **kwargs: Any) -> Booking:
        booking = self.paid(**kwargs)
        self.clock.set(booking.starts_at)
        return self.service.transition(
            booking.id, BookingEvent.START, booking.partner_id, ActorRole.PARTNER
        )

    def completed(self, **kwargs: Any) -> Booking:
        booking = self.in_progress(**kwargs)
        self.clock.set(booking.ends_at)
        return self.service.transition(
            booking.id, BookingEvent.COMPLETE, booking.partner_id, ActorRole.PARTNER
        )


@pytest.fixture
def driver(booking_service: BookingService, clock: FrozenClock) -> BookingDriver:
    return BookingDriver(booking_service, clock)
