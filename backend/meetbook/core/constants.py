"""Application-wide constants for the Meetbook booking core."""

from __future__ import annotations

BRAND_NAME = "Meetbook"

# User-facing, searchable codes. Formats are persisted and must stay stable.
BOOKING_CODE_PREFIX = "BK"
BOOKING_CODE_LENGTH = 8
TRANSACTION_CODE_PREFIX = "TXN"
TRANSACTION_CODE_LENGTH = 10
CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

SUPPORTED_CURRENCIES = ("VND", "USD")
DEFAULT_CURRENCY = "VND"

# Text constraints
MAX_REASON_LENGTH = 500
MAX_NOTE_LENGTH = 1000

# Query limits
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

SYSTEM_ACTOR_ID = "system"
