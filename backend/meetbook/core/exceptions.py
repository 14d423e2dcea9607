# backend/meetbook/core/exceptions.py
"""
Domain-specific exceptions for the Meetbook booking core.

Every business rejection carries a stable machine-readable ``code`` so that
callers (HTTP controllers, admin tooling) can branch on it without parsing
messages. ``to_http_exception`` gives the HTTP layer a ready-made response.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class SlotNotAvailableException(ConflictException):
    """Raised when the requested window overlaps a held or booked slot."""

    def __init__(self, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="This time slot is not available",
            code="SLOT_NOT_AVAILABLE",
            details=details or {},
        )


class SlotHoldExpiredException(ConflictException):
    """Raised when a slot hold is used after its grace period ran out."""

    def __init__(self, slot_id: str):
        super().__init__(
            message="The slot hold has expired and the slot was released",
            code="SLOT_HOLD_EXPIRED",
            details={"slot_id": slot_id},
        )


class InsufficientHoursException(BusinessRuleException):
    """Raised when the booked duration is below the minimum-hours policy."""

    def __init__(self, required_hours: float, provided_hours: float):
        super().__init__(
            message=f"Bookings must last at least {required_hours:g} hours",
            code="INSUFFICIENT_HOURS",
            details={
                "required_hours": required_hours,
                "provided_hours": provided_hours,
            },
        )


class CannotBookSelfException(BusinessRuleException):
    """Raised when a requester tries to book themselves."""

    def __init__(self, user_id: str):
        super().__init__(
            message="You cannot book yourself",
            code="CANNOT_BOOK_SELF",
            details={"user_id": user_id},
        )


class InvalidStatusTransitionException(BusinessRuleException):
    """Raised when an event is not legal from the booking's current status."""

    def __init__(self, booking_id: str, current_status: str, event: str):
        super().__init__(
            message=f"Cannot {event} a booking that is {current_status}",
            code="INVALID_STATUS",
            details={
                "booking_id": booking_id,
                "current_status": current_status,
                "event": event,
            },
        )


class AlreadyInStateException(BusinessRuleException):
    """
    Raised when a transition would leave the booking where it already is.

    Callers retrying an idempotent request should catch this and treat it
    as success.
    """

    def __init__(self, booking_id: str, target_status: str):
        super().__init__(
            message=f"Booking is already {target_status}",
            code="ALREADY_IN_STATE",
            details={"booking_id": booking_id, "status": target_status},
        )


class StaleStateException(ConflictException):
    """Raised when a conditional update lost the race to a concurrent writer."""

    def __init__(self, entity: str, entity_id: str, expected: str):
        super().__init__(
            message=f"{entity} {entity_id} changed concurrently; reload and retry",
            code="STALE_STATE",
            details={"entity": entity, "id": entity_id, "expected": expected},
        )


class RefundAfterReleaseException(BusinessRuleException):
    """Raised when a refund is requested for funds that already left escrow."""

    def __init__(self, booking_id: str, escrow_state: str):
        super().__init__(
            message="Escrowed funds were already released and cannot be refunded",
            code="REFUND_AFTER_RELEASE",
            details={"booking_id": booking_id, "escrow_state": escrow_state},
        )


class SettlementPendingException(ServiceException):
    """Raised when the ledger did not acknowledge an instruction yet; retries continue."""

    status_code = status.HTTP_202_ACCEPTED

    def __init__(self, booking_id: str, instruction: str, error: Optional[str] = None):
        super().__init__(
            message="Settlement is pending with the ledger",
            code="SETTLEMENT_PENDING",
            details={"booking_id": booking_id, "instruction": instruction, "error": error},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
