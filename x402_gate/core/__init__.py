"""
Core payment verification logic.

Submodules:
- types: receipts, transfer events, verification results
- dedup_store: durable backends for processed transaction references
- processed_set: in-memory set written through to a dedup store
- payment_verifier: verification state machine and rollback
"""
from .types import (
    ErrorKind,
    LogEntry,
    Receipt,
    ReceiptStatus,
    TransferEvent,
    VerificationResult,
    VerificationState,
    canonicalize_reference,
    is_valid_reference,
)

__all__ = [
    "ErrorKind",
    "LogEntry",
    "Receipt",
    "ReceiptStatus",
    "TransferEvent",
    "VerificationResult",
    "VerificationState",
    "canonicalize_reference",
    "is_valid_reference",
]
