"""Centralized pricing calculations for bookings."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.exceptions import ValidationException
from .base import BaseService

Number = Union[int, float, str, Decimal]

HOURS_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class PriceBreakdown:
    """Amounts owed for one booking, in whole currency units."""

    hourly_rate: int
    requested_hours: Decimal
    minimum_hours: Decimal
    actual_hours: Decimal
    fee_rate: Decimal
    subtotal: int
    fee: int
    total: int
    minimum_applied: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("requested_hours", "minimum_hours", "actual_hours", "fee_rate"):
            data[key] = float(data[key])
        return data


def _to_decimal(value: Number, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationException(f"{field} must be a number", code="INVALID_PRICING_INPUT")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationException(
            f"{field} must be a number",
            code="INVALID_PRICING_INPUT",
            details={"field": field, "value": str(value)},
        )
    if not result.is_finite():
        raise ValidationException(
            f"{field} must be finite", code="INVALID_PRICING_INPUT", details={"field": field}
        )
    return result


def _round_to_int(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_price(
    hourly_rate: Number,
    requested_hours: Number,
    minimum_hours: Number,
    fee_rate: Number,
) -> PriceBreakdown:
    """
    Convert a rate and duration into subtotal, platform fee and total.

    Billable hours are floored at ``minimum_hours``. Subtotal and fee are
    each rounded half-up to a whole currency unit and the total is their
    sum, never a rounding of its own.
    """
    rate = _to_decimal(hourly_rate, "hourly_rate")
    requested = _to_decimal(requested_hours, "requested_hours")
    minimum = _to_decimal(minimum_hours, "minimum_hours")
    fee_pct = _to_decimal(fee_rate, "fee_rate")

    if rate < 0:
        raise ValidationException(
            "Hourly rate cannot be negative",
            code="INVALID_PRICING_INPUT",
            details={"field": "hourly_rate"},
        )
    if requested <= 0:
        raise ValidationException(
            "Requested hours must be positive",
            code="INVALID_PRICING_INPUT",
            details={"field": "requested_hours"},
        )
    if minimum < 1:
        raise ValidationException(
            "Minimum hours must be at least 1",
            code="INVALID_PRICING_INPUT",
            details={"field": "minimum_hours"},
        )
    if not Decimal("0") <= fee_pct < Decimal("1"):
        raise ValidationException(
            "Fee rate must be in [0, 1)",
            code="INVALID_PRICING_INPUT",
            details={"field": "fee_rate"},
        )

    actual = max(requested, minimum)
    subtotal = _round_to_int(rate * actual)
    fee = _round_to_int(Decimal(subtotal) * fee_pct)

    return PriceBreakdown(
        hourly_rate=_round_to_int(rate),
        requested_hours=requested,
        minimum_hours=minimum,
        actual_hours=actual,
        fee_rate=fee_pct,
        subtotal=subtotal,
        fee=fee,
        total=subtotal + fee,
        minimum_applied=requested < minimum,
    )


class PricingService(BaseService):
    """Booking price previews using the platform's configured fee and minimum."""

    def __init__(self, db: Session, clock: Optional[Clock] = None) -> None:
        super().__init__(db, clock)

    def billing_floor(self, partner_minimum_hours: Optional[Number] = None) -> Decimal:
        """Billable-hours floor: the larger of the platform and partner minimums."""
        global_minimum = Decimal(settings.minimum_booking_hours)
        partner_minimum = (
            _to_decimal(partner_minimum_hours, "partner_minimum_hours")
            if partner_minimum_hours is not None
            else Decimal(settings.default_partner_minimum_hours)
        )
        return max(global_minimum, partner_minimum)

    @BaseService.measure_operation("pricing.preview")
    def get_booking_price(
        self,
        hourly_rate: Number,
        requested_hours: Number,
        *,
        partner_minimum_hours: Optional[Number] = None,
    ) -> PriceBreakdown:
        """Read-only price preview. Touches no state."""
        return compute_price(
            hourly_rate,
            requested_hours,
            self.billing_floor(partner_minimum_hours),
            Decimal(str(settings.platform_fee_rate)),
        )
