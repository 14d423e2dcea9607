"""
Partner terms used when pricing a booking.

Partner profiles live outside the booking core. The core only needs the
commercial terms at booking time, which it snapshots onto the booking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from ..core.exceptions import NotFoundException


@dataclass(frozen=True)
class PartnerTerms:
    partner_id: str
    hourly_rate: int
    minimum_hours: Optional[int] = None
    currency: Optional[str] = None
    is_available: bool = True


class PartnerDirectory(Protocol):
    def get_terms(self, partner_id: str) -> PartnerTerms:
        """Return the partner's current terms or raise NotFoundException."""
        ...


class StaticPartnerDirectory:
    """In-memory directory for development and tests."""

    def __init__(self, partners: Optional[Dict[str, PartnerTerms]] = None) -> None:
        self._partners: Dict[str, PartnerTerms] = dict(partners or {})

    def add(self, terms: PartnerTerms) -> None:
        self._partners[terms.partner_id] = terms

    def get_terms(self, partner_id: str) -> PartnerTerms:
        terms = self._partners.get(partner_id)
        if terms is None:
            raise NotFoundException(
                "Partner not found", code="PARTNER_NOT_FOUND", details={"partner_id": partner_id}
            )
        return terms


# Process-wide directory for wiring that never creates bookings (background tasks)
default_partner_directory = StaticPartnerDirectory()
