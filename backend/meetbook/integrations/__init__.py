"""External service integrations for the Meetbook booking core."""

from .ledger_client import FakeLedgerClient, HttpLedgerClient, LedgerAck, LedgerClient

__all__ = ["FakeLedgerClient", "HttpLedgerClient", "LedgerAck", "LedgerClient"]
