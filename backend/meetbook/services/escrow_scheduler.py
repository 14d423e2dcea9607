# backend/meetbook/services/escrow_scheduler.py
"""
Escrow Scheduler for the Meetbook booking core.

Issues hold, release and refund instructions to the ledger and owns the
delayed release that follows a completed booking.

Settlement runs in three phases, the same way for every instruction:

1. Claim (short transaction): take the record's claim token and reuse or
   create the LedgerInstruction whose transaction code is the idempotency
   reference. Committed before the ledger is called.
2. Ledger call, outside any transaction.
3. Record (short transaction): on ack, move the escrow state with a
   conditional update guarded by the claim token and expected state. On
   failure, drop the claim and schedule the next attempt with capped
   exponential backoff. After ``ledger_max_attempts`` the record is flagged
   for manual intervention and an operational alert is raised. So is an
   ack the record can no longer accept.

Only the claim winner talks to the ledger, so a release can fire from a
timer, the periodic sweep and an admin action at once and still produce a
single ledger release. A dispute cannot freeze a claimed release, and a
cancellation during a hold marks the record so a late hold ack is refunded.

The schedule is durable: ``release_at`` lives on the record. Timers are an
optimization; the sweep reads only the database and fires whatever is due,
and ``recover`` re-arms timers after a restart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time as time_module
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from ..core.clock import Clock, ensure_utc
from ..core.config import settings
from ..core.enums import EscrowState, LedgerInstructionKind, LedgerInstructionStatus
from ..core.exceptions import (
    BusinessRuleException,
    NotFoundException,
    RefundAfterReleaseException,
    StaleStateException,
)
from ..core.ulid_helper import generate_transaction_code, generate_ulid
from ..integrations.ledger_client import LedgerAck, LedgerClient
from ..models.escrow import EscrowRecord, LedgerInstruction
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.escrow_repository import EscrowRepository
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


class ReleaseTimer(Protocol):
    """Wakes the scheduler when a release falls due."""

    def arm(self, booking_id: str, at: datetime) -> None: ...

    def disarm(self, booking_id: str) -> None: ...


class NullReleaseTimer:
    """No timers; the periodic sweep alone fires releases."""

    def arm(self, booking_id: str, at: datetime) -> None:
        return None

    def disarm(self, booking_id: str) -> None:
        return None


_SETTLEMENT_TRANSITIONS = {
    LedgerInstructionKind.HOLD: ((EscrowState.NONE,), EscrowState.HELD, "held_at"),
    LedgerInstructionKind.RELEASE: (
        (EscrowState.RELEASE_SCHEDULED,),
        EscrowState.RELEASED,
        "released_at",
    ),
    LedgerInstructionKind.REFUND: (
        (EscrowState.HELD, EscrowState.RELEASE_SCHEDULED),
        EscrowState.REFUNDED,
        "refunded_at",
    ),
}


@dataclass(frozen=True)
class SettlementResult:
    """What happened to one ledger instruction."""

    booking_id: str
    kind: LedgerInstructionKind
    state: EscrowState
    acknowledged: bool
    attempted: bool = False
    transaction_code: Optional[str] = None
    error: Optional[str] = None
    escalated: bool = False


@dataclass
class SweepReport:
    released: List[str] = field(default_factory=list)
    holds_acknowledged: List[str] = field(default_factory=list)
    refunds_acknowledged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class RecoveryReport:
    rearmed: List[str] = field(default_factory=list)
    sweep: SweepReport = field(default_factory=SweepReport)


class EscrowScheduler(BaseService):
    """Ledger instructions and the durable delayed-release schedule."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerClient,
        clock: Optional[Clock] = None,
        timer: Optional[ReleaseTimer] = None,
        *,
        escrow_repository: Optional[EscrowRepository] = None,
        release_delay: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[int] = None,
        backoff_cap: Optional[int] = None,
        claim_ttl: Optional[timedelta] = None,
    ) -> None:
        super().__init__(db, clock)
        self.ledger = ledger
        self.timer: ReleaseTimer = timer or NullReleaseTimer()
        self.repository = escrow_repository or RepositoryFactory.create_escrow_repository(db)
        self.release_delay = release_delay or timedelta(hours=settings.escrow_release_delay_hours)
        self.max_attempts = max_attempts or settings.ledger_max_attempts
        self.backoff_base = backoff_base or settings.ledger_backoff_base
        self.backoff_cap = backoff_cap or settings.ledger_backoff_cap
        self.claim_ttl = claim_ttl or timedelta(seconds=settings.escrow_claim_ttl_seconds)

    # Lookups

    def get_record(self, booking_id: str) -> Optional[EscrowRecord]:
        return self.repository.get_by_booking_id(booking_id)

    def _require_record(self, booking_id: str) -> EscrowRecord:
        record = self.repository.get_by_booking_id(booking_id)
        if record is None:
            raise NotFoundException(
                "No escrow record for booking", details={"booking_id": booking_id}
            )
        return record

    def release_time_for(self, completed_at: datetime) -> datetime:
        return ensure_utc(completed_at) + self.release_delay

    def backoff_for(self, attempts: int) -> timedelta:
        """Capped exponential backoff: base, 2*base, 4*base ... up to cap."""
        exponent = max(attempts - 1, 0)
        seconds = min(self.backoff_cap, self.backoff_base * (2**min(exponent, 20)))
        return timedelta(seconds=seconds)

    # Hold

    @BaseService.measure_operation("escrow.hold")
    def hold(self, booking_id: str, amount: int, currency: str) -> SettlementResult:
        """
        Earmark the booking's funds.

        Creates the record on first use. A failed attempt leaves the hold
        pending; the sweep keeps retrying it.
        """
        if amount < 0:
            raise BusinessRuleException("Escrow amount cannot be negative", code="INVALID_AMOUNT")

        with self.transaction():
            record = self.repository.get_by_booking_id(booking_id)
            if record is None:
                record = self.repository.create(
                    booking_id=booking_id,
                    amount=amount,
                    currency=currency,
                    state=EscrowState.NONE.value,
                    pending_instruction=LedgerInstructionKind.HOLD.value,
                    attempts=0,
                    needs_attention=False,
                    created_at=self.clock.now(),
                )
            elif record.state != EscrowState.NONE.value:
                return self._result(record, LedgerInstructionKind.HOLD)
            elif record.pending_instruction is None:
                self.repository.update(
                    record.id,
                    pending_instruction=LedgerInstructionKind.HOLD.value,
                    amount=amount,
                    currency=currency,
                    updated_at=self.clock.now(),
                )
            escrow_id = record.id

        return self._execute(escrow_id, LedgerInstructionKind.HOLD)

    # Release scheduling

    def schedule_release(self, booking_id: str, at: datetime) -> EscrowRecord:
        """
        HELD -> RELEASE_SCHEDULED with ``release_at = at``, then arm the timer.

        Runs inside the caller's transaction so the booking's completion and
        the schedule commit together. An armed timer that fires for a
        schedule that was rolled back finds nothing due and does nothing.
        """
        record = self._require_record(booking_id)
        now = self.clock.now()
        moved = self.repository.transition_state(
            record.id,
            EscrowState.HELD,
            EscrowState.RELEASE_SCHEDULED,
            release_at=at,
            release_frozen_at=None,
            pending_instruction=LedgerInstructionKind.RELEASE.value,
            attempts=0,
            next_attempt_at=None,
            last_error=None,
            updated_at=now,
        )
        if not moved:
            self.repository.refresh(record)
            raise StaleStateException("EscrowRecord", record.id, EscrowState.HELD.value)

        self.timer.arm(booking_id, at)
        self.logger.info(
            "Escrow release scheduled",
            extra={"booking_id": booking_id, "release_at": at.isoformat()},
        )
        return record

    def cancel_scheduled_release(self, booking_id: str) -> bool:
        """
        Freeze a scheduled release (dispute window). Runs in the caller's transaction.

        Returns False when there is no scheduled release to freeze. A release
        already claimed for the ledger cannot be frozen: the caller gets
        DISPUTE_WINDOW_CLOSED once it has settled, StaleStateException while
        it is still in flight.
        """
        record = self.repository.get_by_booking_id(booking_id)
        if record is None or record.state != EscrowState.RELEASE_SCHEDULED.value:
            return False
        now = self.clock.now()
        frozen = self.repository.conditional_update(
            record.id,
            {
                "state": EscrowState.RELEASE_SCHEDULED.value,
                "release_frozen_at": None,
                "claim_token": None,
            },
            {"release_frozen_at": now, "updated_at": now},
        )
        if not frozen:
            self.repository.refresh(record)
            if record.state == EscrowState.RELEASED.value:
                raise BusinessRuleException(
                    "Funds were already released; the dispute window is closed",
                    code="DISPUTE_WINDOW_CLOSED",
                    details={"booking_id": booking_id},
                )
            if record.state == EscrowState.RELEASE_SCHEDULED.value and record.claim_token:
                self.logger.info(
                    "Release in flight; dispute rejected",
                    extra={"booking_id": booking_id},
                )
                raise StaleStateException(
                    "EscrowRecord", record.id, EscrowState.RELEASE_SCHEDULED.value
                )
            return False

        self.timer.disarm(booking_id)
        self.logger.info("Escrow release frozen", extra={"booking_id": booking_id})
        return True

    @BaseService.measure_operation("escrow.fire_release")
    def fire_release(self, booking_id: str) -> SettlementResult:
        """
        Timer target. Releases the funds if the schedule is due.

        Safe to call any number of times: only a RELEASE_SCHEDULED, unfrozen,
        due record is released, and only by the claim winner.
        """
        now = self.clock.now()
        record = self._require_record(booking_id)
        if record.state != EscrowState.RELEASE_SCHEDULED.value or record.release_frozen_at:
            return self._result(record, LedgerInstructionKind.RELEASE)

        release_at = ensure_utc(record.release_at) if record.release_at else None
        if release_at is not None and release_at > now:
            # Woken early; keep the schedule
            self.timer.arm(booking_id, release_at)
            return self._result(record, LedgerInstructionKind.RELEASE)

        return self._execute(record.id, LedgerInstructionKind.RELEASE, due_at=now)

    @BaseService.measure_operation("escrow.release_now")
    def release_now(self, booking_id: str, *, override_freeze: bool = False) -> SettlementResult:
        """Administrative release ahead of schedule, optionally lifting a dispute freeze."""
        now = self.clock.now()
        with self.transaction():
            record = self._require_record(booking_id)
            if record.state != EscrowState.RELEASE_SCHEDULED.value:
                return self._result(record, LedgerInstructionKind.RELEASE)
            if record.release_frozen_at is not None and not override_freeze:
                raise BusinessRuleException(
                    "Release is frozen by a dispute",
                    code="RELEASE_FROZEN",
                    details={"booking_id": booking_id},
                )
            self.repository.conditional_update(
                record.id,
                {"state": EscrowState.RELEASE_SCHEDULED.value},
                {"release_at": now, "release_frozen_at": None, "updated_at": now},
            )
            escrow_id = record.id
        self.timer.disarm(booking_id)
        return self._execute(escrow_id, LedgerInstructionKind.RELEASE, due_at=now)

    # Refund

    @BaseService.measure_operation("escrow.refund")
    def refund(self, booking_id: str) -> Optional[SettlementResult]:
        """
        Return held funds to the requester.

        Legal only while HELD or RELEASE_SCHEDULED. Returns None when nothing
        was ever held. A hold still pending with the ledger is marked for
        refund instead: abandoned if the ledger never took it, refunded once
        it is acknowledged otherwise.
        """
        now = self.clock.now()
        hold_pending = False
        with self.transaction():
            record = self.repository.get_by_booking_id(booking_id)
            if record is None:
                return None
            escrow_id = record.id

            if record.state == EscrowState.NONE.value:
                if record.pending_instruction != LedgerInstructionKind.HOLD.value:
                    return None
                hold_pending = self.repository.conditional_update(
                    escrow_id,
                    {
                        "state": EscrowState.NONE.value,
                        "pending_instruction": LedgerInstructionKind.HOLD.value,
                    },
                    {"refund_requested_at": now, "updated_at": now},
                )
                if not hold_pending:
                    # The hold settled meanwhile; refund it as usual
                    self.repository.refresh(record)

            if not hold_pending:
                state = EscrowState(record.state)
                if state == EscrowState.REFUNDED:
                    return self._result(record, LedgerInstructionKind.REFUND)
                if state == EscrowState.RELEASED:
                    raise RefundAfterReleaseException(booking_id, state.value)
                if state == EscrowState.NONE:
                    return None

                if record.pending_instruction != LedgerInstructionKind.REFUND.value:
                    switched = self.repository.conditional_update(
                        escrow_id,
                        {"state": state.value, "claim_token": None},
                        {
                            "pending_instruction": LedgerInstructionKind.REFUND.value,
                            "attempts": 0,
                            "next_attempt_at": None,
                            "last_error": None,
                            "updated_at": now,
                        },
                    )
                    if not switched:
                        self.repository.refresh(record)
                        if record.state == EscrowState.RELEASED.value:
                            raise RefundAfterReleaseException(booking_id, record.state)
                        raise StaleStateException("EscrowRecord", record.id, state.value)

        if hold_pending:
            return self._refund_pending_hold(escrow_id)
        self.timer.disarm(booking_id)
        return self._execute(escrow_id, LedgerInstructionKind.REFUND)

    def _refund_pending_hold(self, escrow_id: str) -> Optional[SettlementResult]:
        # Settles or abandons the hold; an in-flight hold is left to its claimer
        self._execute(escrow_id, LedgerInstructionKind.HOLD)
        record = self.repository.get_by_id(escrow_id)
        if record is None:
            return None
        if record.state == EscrowState.NONE.value and record.pending_instruction is None:
            return None
        if record.pending_instruction == LedgerInstructionKind.REFUND.value:
            return self._execute(escrow_id, LedgerInstructionKind.REFUND)
        return self._result(record, LedgerInstructionKind.REFUND)

    def _abandon_hold(
        self,
        record: EscrowRecord,
        token: str,
        instruction: Optional[LedgerInstruction],
    ) -> None:
        """Drop a hold the ledger never accepted for a booking that was cancelled."""
        if instruction is not None:
            instruction.status = LedgerInstructionStatus.ABANDONED.value
        self.repository.release_claim(
            record.id,
            token,
            pending_instruction=None,
            next_attempt_at=None,
            refund_requested_at=None,
            updated_at=self.clock.now(),
        )
        self.logger.warning(
            "Pending escrow hold abandoned on cancellation",
            extra={
                "booking_id": record.booking_id,
                "transaction_code": instruction.transaction_code if instruction else None,
                "attempts": record.attempts,
            },
        )

    # Manual intervention

    def list_needing_attention(self) -> List[EscrowRecord]:
        return self.repository.get_needing_attention()

    def resume(self, booking_id: str) -> EscrowRecord:
        """Clear the manual-intervention flag so the sweep retries the pending instruction."""
        with self.transaction():
            record = self._require_record(booking_id)
            self.repository.update(
                record.id,
                needs_attention=False,
                escalated_at=None,
                attempts=0,
                next_attempt_at=None,
                updated_at=self.clock.now(),
            )
        self.log_operation("escrow_resumed", booking_id=booking_id)
        return record

    # Sweep and recovery

    @BaseService.measure_operation("escrow.sweep")
    def sweep(self, limit: Optional[int] = None) -> SweepReport:
        """Fire due releases and retry pending holds and refunds. Reads only the database."""
        batch = limit or settings.escrow_sweep_batch
        now = self.clock.now()
        stale_before = now - self.claim_ttl
        report = SweepReport()

        for record in self.repository.get_due_releases(now, stale_before=stale_before, limit=batch):
            result = self._execute(record.id, LedgerInstructionKind.RELEASE, due_at=now)
            self._collect(report, result)

        for record in self.repository.get_pending_retries(
            now, stale_before=stale_before, limit=batch
        ):
            kind = LedgerInstructionKind(record.pending_instruction)
            result = self._execute(record.id, kind)
            self._collect(report, result)

        # Sweeps only read; close the read transaction
        self.db.commit()
        prometheus_metrics.mark_sweep_completed(time_module.time())
        if any(
            (report.released, report.failed, report.holds_acknowledged, report.refunds_acknowledged)
        ):
            self.logger.info(
                "Escrow sweep finished",
                extra={
                    "released": len(report.released),
                    "holds": len(report.holds_acknowledged),
                    "refunds": len(report.refunds_acknowledged),
                    "failed": len(report.failed),
                },
            )
        return report

    @staticmethod
    def _collect(report: SweepReport, result: SettlementResult) -> None:
        if not result.attempted:
            return
        if not result.acknowledged:
            report.failed.append(result.booking_id)
        elif result.kind == LedgerInstructionKind.RELEASE:
            report.released.append(result.booking_id)
        elif result.kind == LedgerInstructionKind.HOLD:
            report.holds_acknowledged.append(result.booking_id)
        else:
            report.refunds_acknowledged.append(result.booking_id)

    @BaseService.measure_operation("escrow.recover")
    def recover(self) -> RecoveryReport:
        """
        Process-start recovery.

        Re-arms timers for releases still in the future (keeping their
        original time) and immediately fires any that fell due while the
        process was down.
        """
        now = self.clock.now()
        report = RecoveryReport()
        for record in self.repository.get_future_releases(now):
            self.timer.arm(record.booking_id, ensure_utc(record.release_at))
            report.rearmed.append(record.booking_id)
        self.db.commit()

        report.sweep = self.sweep()
        self.logger.info(
            "Escrow schedule recovered",
            extra={"rearmed": len(report.rearmed), "released": len(report.sweep.released)},
        )
        return report

    # Settlement core

    def _result(
        self,
        record: EscrowRecord,
        kind: LedgerInstructionKind,
        *,
        attempted: bool = False,
        transaction_code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> SettlementResult:
        _, target, _ = _SETTLEMENT_TRANSITIONS[kind]
        state = EscrowState(record.state)
        return SettlementResult(
            booking_id=record.booking_id,
            kind=kind,
            state=state,
            acknowledged=state == target,
            attempted=attempted,
            transaction_code=transaction_code,
            error=error or record.last_error,
            escalated=bool(record.needs_attention),
        )

    def _new_transaction_code(self) -> str:
        code = generate_transaction_code()
        while self.repository.transaction_code_exists(code):
            code = generate_transaction_code()
        return code

    def _call_ledger(
        self,
        kind: LedgerInstructionKind,
        amount: int,
        currency: str,
        reference: str,
        *,
        booking_id: str,
        hold_reference: Optional[str] = None,
    ) -> LedgerAck:
        try:
            if kind == LedgerInstructionKind.HOLD:
                return self.ledger.hold(amount, currency, reference, booking_id=booking_id)
            call = (
                self.ledger.release if kind == LedgerInstructionKind.RELEASE else self.ledger.refund
            )
            return call(
                amount, currency, reference, booking_id=booking_id, hold_reference=hold_reference
            )
        except Exception as exc:
            # A ledger client bug must not strand the claim; record it as a failure
            self.logger.error(
                "Ledger client raised",
                exc_info=True,
                extra={"kind": kind.value, "reference": reference},
            )
            return LedgerAck.failure(f"{type(exc).__name__}: {exc}", retryable=True)

    def _execute(
        self,
        escrow_id: str,
        kind: LedgerInstructionKind,
        *,
        due_at: Optional[datetime] = None,
    ) -> SettlementResult:
        expected, target, stamp_field = _SETTLEMENT_TRANSITIONS[kind]
        token = generate_ulid()

        # Phase 1: claim
        with self.transaction():
            now = self.clock.now()
            claimed = self.repository.claim(
                escrow_id,
                kind=kind,
                token=token,
                now=now,
                stale_before=now - self.claim_ttl,
                due_at=due_at,
            )
            record = self.repository.get_by_id(escrow_id)
            if record is None:
                raise NotFoundException("Escrow record not found", details={"id": escrow_id})
            if not claimed:
                self.logger.debug(
                    "Escrow claim not acquired",
                    extra={"booking_id": record.booking_id, "kind": kind.value},
                )
                return self._result(record, kind)
            if EscrowState(record.state) not in expected:
                # Nothing to do for this instruction any more
                self.repository.release_claim(escrow_id, token, pending_instruction=None)
                return self._result(record, kind)

            instruction = self.repository.get_open_instruction(escrow_id, kind)
            if kind == LedgerInstructionKind.HOLD and record.refund_requested_at is not None:
                # Cancelled before the hold landed. A hold the ledger never
                # took is dropped; one whose outcome is unknown is resent.
                if instruction is None or (
                    instruction.status == LedgerInstructionStatus.FAILED.value
                ):
                    self._abandon_hold(record, token, instruction)
                    return self._result(record, kind)

            if instruction is None:
                instruction = self.repository.create_instruction(
                    transaction_code=self._new_transaction_code(),
                    escrow_id=escrow_id,
                    booking_id=record.booking_id,
                    kind=kind.value,
                    amount=record.amount,
                    currency=record.currency,
                    status=LedgerInstructionStatus.PENDING.value,
                    attempts=0,
                    created_at=now,
                )
            instruction.attempts = int(instruction.attempts or 0) + 1
            booking_id = record.booking_id
            instruction_id = instruction.id
            reference = instruction.transaction_code
            amount, currency = instruction.amount, instruction.currency
            hold_reference = None
            if kind != LedgerInstructionKind.HOLD:
                held = self.repository.get_acknowledged_instruction(
                    escrow_id, LedgerInstructionKind.HOLD
                )
                hold_reference = held.transaction_code if held is not None else None

        # Phase 2: ledger, outside any transaction
        started = time_module.monotonic()
        ack = self._call_ledger(
            kind,
            amount,
            currency,
            reference,
            booking_id=booking_id,
            hold_reference=hold_reference,
        )
        duration = time_module.monotonic() - started

        # Phase 3: record the outcome
        with self.transaction():
            now = self.clock.now()
            record = self.repository.get_by_id(escrow_id)
            instruction = self.repository.get_instruction(instruction_id)
            if ack.ok:
                settled = self.repository.settle_claimed(
                    escrow_id,
                    token=token,
                    expected=expected,
                    target=target,
                    require_unfrozen=kind == LedgerInstructionKind.RELEASE,
                    ledger_instruction_id=ack.instruction_id,
                    updated_at=now,
                    **{stamp_field: now},
                )
                if instruction is not None:
                    instruction.status = LedgerInstructionStatus.ACKNOWLEDGED.value
                    instruction.ledger_reference = ack.instruction_id
                    instruction.acknowledged_at = now
                    instruction.last_error = None
                prometheus_metrics.record_ledger_instruction(kind.value, "acknowledged", duration)
                if settled:
                    cancelled_meanwhile = record is not None and record.refund_requested_at
                    if kind == LedgerInstructionKind.HOLD and cancelled_meanwhile:
                        self._queue_refund_after_hold(record, now)
                    self.logger.info(
                        "Ledger instruction acknowledged",
                        extra={
                            "booking_id": booking_id,
                            "kind": kind.value,
                            "reference": reference,
                            "escrow_state": target.value,
                        },
                    )
                else:
                    self._handle_unsettled_ack(escrow_id, token, kind, reference, now)
            else:
                escalated = self._record_failure(
                    escrow_id, token, kind, reference, ack, now, instruction
                )
                prometheus_metrics.record_ledger_instruction(
                    kind.value, "escalated" if escalated else "retrying", duration
                )
            record = self.repository.get_by_id(escrow_id)

        return self._result(
            record, kind, attempted=True, transaction_code=reference, error=ack.error
        )

    def _queue_refund_after_hold(self, record: EscrowRecord, now: datetime) -> None:
        """A hold acknowledged for a cancelled booking goes straight to the refund queue."""
        self.repository.update(
            record.id,
            pending_instruction=LedgerInstructionKind.REFUND.value,
            attempts=0,
            next_attempt_at=None,
            refund_requested_at=None,
            updated_at=now,
        )
        self.logger.warning(
            "Hold acknowledged after cancellation; refund queued",
            extra={"booking_id": record.booking_id},
        )

    def _handle_unsettled_ack(
        self,
        escrow_id: str,
        token: str,
        kind: LedgerInstructionKind,
        reference: str,
        now: datetime,
    ) -> None:
        """
        The ledger applied an instruction the record no longer accepts.

        Either another worker already settled it, or the money moved while the
        record says otherwise (a frozen or refunded release, say). The latter
        is flagged for manual intervention.
        """
        record = self.repository.get_by_id(escrow_id)
        if record is None:
            return
        _, target, _ = _SETTLEMENT_TRANSITIONS[kind]
        log_extra = {
            "booking_id": record.booking_id,
            "kind": kind.value,
            "reference": reference,
            "escrow_state": record.state,
        }
        if record.state == target.value:
            self.logger.info("Ledger instruction already settled", extra=log_extra)
            return
        if record.claim_token and record.claim_token != token:
            # A worker that reclaimed a stale claim will record its own ack
            self.logger.warning("Ledger acknowledged after claim was lost", extra=log_extra)
            return

        frozen = " with release frozen" if record.release_frozen_at else ""
        values = {
            "needs_attention": True,
            "escalated_at": now,
            "last_error": f"Ledger acknowledged {kind.value} {reference} "
            f"while escrow was {record.state}{frozen}",
            "updated_at": now,
        }
        if not self.repository.release_claim(escrow_id, token, **values):
            self.repository.update(escrow_id, **values)
        prometheus_metrics.inc_manual_intervention(kind.value)
        self.logger.critical(
            "Ledger acknowledged an instruction the escrow record rejects", extra=log_extra
        )

    def _record_failure(
        self,
        escrow_id: str,
        token: str,
        kind: LedgerInstructionKind,
        reference: str,
        ack: LedgerAck,
        now: datetime,
        instruction: Optional[LedgerInstruction],
    ) -> bool:
        """Drop the claim and schedule the next attempt. Returns True when escalated."""
        record = self.repository.get_by_id(escrow_id)
        if record is None:
            return False
        attempts = int(record.attempts or 0) + 1
        escalate = attempts >= self.max_attempts or not ack.retryable
        error = (ack.error or "ledger instruction failed")[:500]

        values = {
            "attempts": attempts,
            "last_error": error,
            "next_attempt_at": now + self.backoff_for(attempts),
            "updated_at": now,
        }
        if escalate:
            values["needs_attention"] = True
            values["escalated_at"] = now
        if not self.repository.release_claim(escrow_id, token, **values):
            self.logger.warning(
                "Ledger failure recorded after claim was lost",
                extra={"booking_id": record.booking_id, "kind": kind.value},
            )
            return False

        if instruction is not None:
            instruction.status = LedgerInstructionStatus.FAILED.value
            instruction.last_error = error

        log_extra = {
            "booking_id": record.booking_id,
            "kind": kind.value,
            "reference": reference,
            "attempts": attempts,
            "escrow_state": record.state,
            "retryable": ack.retryable,
            "error": error,
        }
        if escalate:
            prometheus_metrics.inc_manual_intervention(kind.value)
            self.logger.critical(
                "Escrow ledger instruction needs manual intervention", extra=log_extra
            )
        else:
            self.logger.warning("Ledger instruction failed; will retry", extra=log_extra)
        return escalate
