# backend/meetbook/repositories/escrow_repository.py
"""
Escrow Repository for the Meetbook booking core.

Escrow records move through NONE -> HELD -> RELEASE_SCHEDULED -> RELEASED,
or to REFUNDED from HELD/RELEASE_SCHEDULED. Every move is a conditional
UPDATE on the expected state. Work owed to the ledger is claimed with a
claim token first, so only one worker ever talks to the ledger about a
given record at a time.
"""

from datetime import datetime
import logging
from typing import List, Optional, Sequence, cast

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import EscrowState, LedgerInstructionKind, LedgerInstructionStatus
from ..core.exceptions import RepositoryException
from ..models.escrow import EscrowRecord, LedgerInstruction
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class EscrowRepository(BaseRepository[EscrowRecord]):
    """Repository for escrow records and their ledger instructions."""

    def __init__(self, db: Session):
        super().__init__(db, EscrowRecord)

    def get_by_booking_id(self, booking_id: str) -> Optional[EscrowRecord]:
        return self.find_one_by(booking_id=booking_id)

    def transition_state(
        self,
        escrow_id: str,
        expected: EscrowState,
        target: EscrowState,
        **values: object,
    ) -> bool:
        values["state"] = target.value
        return self.conditional_update(escrow_id, {"state": expected.value}, dict(values))

    # Claims

    def claim(
        self,
        escrow_id: str,
        *,
        kind: LedgerInstructionKind,
        token: str,
        now: datetime,
        stale_before: datetime,
        due_at: Optional[datetime] = None,
    ) -> bool:
        """
        Claim the pending ``kind`` instruction of a record.

        Succeeds if nobody holds the claim, or the holder's claim is older than
        ``stale_before`` (a worker that died mid-call). Escalated records are
        never claimed automatically. With ``due_at`` (releases) the record must
        also be unfrozen and scheduled no later than ``due_at``.
        """
        stmt = update(EscrowRecord).where(
            EscrowRecord.id == escrow_id,
            EscrowRecord.pending_instruction == kind.value,
            EscrowRecord.needs_attention.is_(False),
            or_(
                EscrowRecord.claim_token.is_(None),
                EscrowRecord.claimed_at <= stale_before,
            ),
        )
        if due_at is not None:
            stmt = stmt.where(
                EscrowRecord.release_frozen_at.is_(None),
                EscrowRecord.release_at <= due_at,
            )
        stmt = stmt.values(claim_token=token, claimed_at=now, updated_at=now)
        return self._execute_update(stmt, escrow_id)

    def release_claim(self, escrow_id: str, token: str, **values: object) -> bool:
        """Drop our claim and apply ``values``, unless someone reclaimed the record."""
        stmt = (
            update(EscrowRecord)
            .where(EscrowRecord.id == escrow_id, EscrowRecord.claim_token == token)
            .values(claim_token=None, claimed_at=None, **values)
        )
        return self._execute_update(stmt, escrow_id)

    def settle_claimed(
        self,
        escrow_id: str,
        *,
        token: str,
        expected: Sequence[EscrowState],
        target: EscrowState,
        require_unfrozen: bool = False,
        **values: object,
    ) -> bool:
        """
        Apply an acknowledged instruction: move state and clear the claim.

        Guarded on both the claim token and the expected state, so a record
        reaches RELEASED or REFUNDED exactly once. With ``require_unfrozen``
        a release frozen by a dispute is never marked released.
        """
        stmt = update(EscrowRecord).where(
            EscrowRecord.id == escrow_id,
            EscrowRecord.claim_token == token,
            EscrowRecord.state.in_([state.value for state in expected]),
        )
        if require_unfrozen:
            stmt = stmt.where(EscrowRecord.release_frozen_at.is_(None))
        stmt = stmt.values(
            state=target.value,
            claim_token=None,
            claimed_at=None,
            pending_instruction=None,
            attempts=0,
            next_attempt_at=None,
            last_error=None,
            **values,
        )
        return self._execute_update(stmt, escrow_id)

    def _execute_update(self, stmt, escrow_id: str) -> bool:
        try:
            self.db.flush()
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            changed = result.rowcount == 1
            if changed:
                entity = self.db.get(EscrowRecord, escrow_id)
                if entity is not None:
                    self.db.refresh(entity)
            return changed
        except SQLAlchemyError as e:
            self.logger.error(f"Escrow update failed for {escrow_id}: {str(e)}")
            raise RepositoryException(f"Failed to update escrow record: {str(e)}")

    # Sweep queries

    def get_due_releases(
        self, now: datetime, *, stale_before: datetime, limit: int
    ) -> List[EscrowRecord]:
        """RELEASE_SCHEDULED records whose release time has passed and that are free to claim."""
        query = (
            self._build_query()
            .filter(
                EscrowRecord.state == EscrowState.RELEASE_SCHEDULED.value,
                EscrowRecord.pending_instruction == LedgerInstructionKind.RELEASE.value,
                EscrowRecord.release_at <= now,
                EscrowRecord.release_frozen_at.is_(None),
                EscrowRecord.needs_attention.is_(False),
                or_(EscrowRecord.next_attempt_at.is_(None), EscrowRecord.next_attempt_at <= now),
                or_(EscrowRecord.claim_token.is_(None), EscrowRecord.claimed_at <= stale_before),
            )
            .order_by(EscrowRecord.release_at)
            .limit(limit)
        )
        return self._execute_query(query)

    def get_pending_retries(
        self, now: datetime, *, stale_before: datetime, limit: int
    ) -> List[EscrowRecord]:
        """Records with an unacknowledged hold or refund that is due for another attempt."""
        query = (
            self._build_query()
            .filter(
                EscrowRecord.pending_instruction.in_(
                    [LedgerInstructionKind.HOLD.value, LedgerInstructionKind.REFUND.value]
                ),
                EscrowRecord.needs_attention.is_(False),
                or_(EscrowRecord.next_attempt_at.is_(None), EscrowRecord.next_attempt_at <= now),
                or_(EscrowRecord.claim_token.is_(None), EscrowRecord.claimed_at <= stale_before),
            )
            .order_by(EscrowRecord.next_attempt_at, EscrowRecord.created_at)
            .limit(limit)
        )
        return self._execute_query(query)

    def get_future_releases(self, now: datetime) -> List[EscrowRecord]:
        """Scheduled releases not yet due; their timers need arming after a restart."""
        query = (
            self._build_query()
            .filter(
                EscrowRecord.state == EscrowState.RELEASE_SCHEDULED.value,
                EscrowRecord.release_at > now,
                EscrowRecord.release_frozen_at.is_(None),
            )
            .order_by(EscrowRecord.release_at)
        )
        return self._execute_query(query)

    def get_needing_attention(self) -> List[EscrowRecord]:
        query = (
            self._build_query()
            .filter(EscrowRecord.needs_attention.is_(True))
            .order_by(EscrowRecord.escalated_at)
        )
        return self._execute_query(query)

    # Ledger instructions

    def get_open_instruction(
        self, escrow_id: str, kind: LedgerInstructionKind
    ) -> Optional[LedgerInstruction]:
        """The unacknowledged instruction of this kind, reused on every retry."""
        try:
            return cast(
                Optional[LedgerInstruction],
                self.db.query(LedgerInstruction)
                .filter(
                    LedgerInstruction.escrow_id == escrow_id,
                    LedgerInstruction.kind == kind.value,
                    LedgerInstruction.status.in_(
                        [
                            LedgerInstructionStatus.PENDING.value,
                            LedgerInstructionStatus.FAILED.value,
                        ]
                    ),
                )
                .order_by(LedgerInstruction.created_at.desc())
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading ledger instruction for {escrow_id}: {str(e)}")
            raise RepositoryException(f"Failed to load ledger instruction: {str(e)}")

    def get_acknowledged_instruction(
        self, escrow_id: str, kind: LedgerInstructionKind
    ) -> Optional[LedgerInstruction]:
        try:
            return cast(
                Optional[LedgerInstruction],
                self.db.query(LedgerInstruction)
                .filter(
                    LedgerInstruction.escrow_id == escrow_id,
                    LedgerInstruction.kind == kind.value,
                    LedgerInstruction.status == LedgerInstructionStatus.ACKNOWLEDGED.value,
                )
                .order_by(LedgerInstruction.acknowledged_at.desc())
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading acknowledged instruction for {escrow_id}: {str(e)}")
            raise RepositoryException(f"Failed to load ledger instruction: {str(e)}")

    def get_instruction(self, instruction_id: str) -> Optional[LedgerInstruction]:
        try:
            return cast(Optional[LedgerInstruction], self.db.get(LedgerInstruction, instruction_id))
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load ledger instruction: {str(e)}")

    def create_instruction(self, **kwargs: object) -> LedgerInstruction:
        try:
            instruction = LedgerInstruction(**kwargs)
            self.db.add(instruction)
            self.db.flush()
            return instruction
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating ledger instruction: {str(e)}")
            raise RepositoryException(f"Failed to create ledger instruction: {str(e)}")

    def get_instructions(
        self,
        *,
        booking_id: Optional[str] = None,
        kind: Optional[LedgerInstructionKind] = None,
    ) -> List[LedgerInstruction]:
        try:
            query = self.db.query(LedgerInstruction)
            if booking_id:
                query = query.filter(LedgerInstruction.booking_id == booking_id)
            if kind is not None:
                query = query.filter(LedgerInstruction.kind == kind.value)
            return cast(List[LedgerInstruction], query.order_by(LedgerInstruction.created_at).all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing ledger instructions: {str(e)}")
            raise RepositoryException(f"Failed to list ledger instructions: {str(e)}")

    def transaction_code_exists(self, code: str) -> bool:
        try:
            return (
                self.db.query(LedgerInstruction.id)
                .filter(LedgerInstruction.transaction_code == code)
                .first()
                is not None
            )
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to check transaction code: {str(e)}")
