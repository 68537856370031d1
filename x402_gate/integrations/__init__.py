"""External integrations for payment verification."""
from .ledger_client import (
    CircuitBreaker,
    LedgerClient,
    LedgerError,
    decode_transfer_events,
    decode_transfer_log,
)

__all__ = [
    "CircuitBreaker",
    "LedgerClient",
    "LedgerError",
    "decode_transfer_events",
    "decode_transfer_log",
]
