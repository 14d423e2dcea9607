"""ULID generation and user-facing code helpers."""

import secrets
from typing import Optional

import ulid

from .constants import (
    BOOKING_CODE_LENGTH,
    BOOKING_CODE_PREFIX,
    CODE_ALPHABET,
    TRANSACTION_CODE_LENGTH,
    TRANSACTION_CODE_PREFIX,
)


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def parse_ulid(ulid_str: str) -> Optional[ulid.ULID]:
    """Parse and validate a ULID string."""
    try:
        return ulid.ULID.from_str(ulid_str)
    except (ValueError, TypeError):
        return None


def is_valid_ulid(ulid_str: str) -> bool:
    """Check if a string is a valid ULID."""
    return parse_ulid(ulid_str) is not None


def generate_code(prefix: str, length: int) -> str:
    """Return ``PREFIX-XXXX`` with ``length`` random uppercase alphanumerics."""
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{body}"


def generate_booking_code() -> str:
    """Booking code, e.g. ``BK-AB12CD34``."""
    return generate_code(BOOKING_CODE_PREFIX, BOOKING_CODE_LENGTH)


def generate_transaction_code() -> str:
    """Ledger transaction code, e.g. ``TXN-AB12CD34EF``."""
    return generate_code(TRANSACTION_CODE_PREFIX, TRANSACTION_CODE_LENGTH)
