"""Escrow satellite tables for bookings."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import EscrowState, LedgerInstructionStatus
from ..database import Base


class EscrowRecord(Base):
    """
    Funds tied to a single booking.

    ``state`` records where the money is. ``pending_instruction`` records
    what the scheduler still owes the ledger (a hold, release or refund that
    has not been acknowledged yet), with its retry bookkeeping alongside.
    ``refund_requested_at`` marks a booking cancelled while its hold was
    still with the ledger; a hold acknowledged after that is refunded.
    """

    __tablename__ = "escrow_records"
    __table_args__ = (
        CheckConstraint(
            "state IN ('NONE', 'HELD', 'RELEASE_SCHEDULED', 'RELEASED', 'REFUNDED')",
            name="ck_escrow_records_state",
        ),
        CheckConstraint(
            "pending_instruction IS NULL OR pending_instruction IN ('hold', 'release', 'refund')",
            name="ck_escrow_records_pending_instruction",
        ),
        CheckConstraint("amount >= 0", name="check_escrow_amount_non_negative"),
        Index("ix_escrow_state_release_at", "state", "release_at"),
        Index("ix_escrow_pending_next_attempt", "pending_instruction", "next_attempt_at"),
    )

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id"),
        nullable=False,
        unique=True,
    )
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    state = Column(String(20), nullable=False, default=EscrowState.NONE.value)

    release_at = Column(DateTime(timezone=True), nullable=True)
    release_frozen_at = Column(DateTime(timezone=True), nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)

    pending_instruction = Column(String(10), nullable=True)
    claim_token = Column(String(26), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String(500), nullable=True)
    needs_attention = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    escalated_at = Column(DateTime(timezone=True), nullable=True)

    ledger_instruction_id = Column(String(100), nullable=True)

    held_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("Booking", back_populates="escrow")
    instructions = relationship(
        "LedgerInstruction",
        back_populates="escrow",
        order_by="LedgerInstruction.created_at",
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowRecord booking={self.booking_id} state={self.state} "
            f"pending={self.pending_instruction}>"
        )


class LedgerInstruction(Base):
    """One hold/release/refund instruction sent to the ledger, reused across retries."""

    __tablename__ = "ledger_instructions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    transaction_code = Column(String(20), nullable=False, unique=True, index=True)
    escrow_id = Column(String(26), ForeignKey("escrow_records.id"), nullable=False, index=True)
    booking_id = Column(String(26), nullable=False, index=True)
    kind = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=LedgerInstructionStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    ledger_reference = Column(String(100), nullable=True)
    last_error = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    escrow = relationship("EscrowRecord", back_populates="instructions")

    def __repr__(self) -> str:
        return (
            f"<LedgerInstruction {self.transaction_code} {self.kind} "
            f"booking={self.booking_id} status={self.status}>"
        )
