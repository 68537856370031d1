"""
Domain types for payment verification.

Receipts and log entries mirror what an EVM node reports for a mined
transaction. They are immutable once fetched; a receipt that does not exist
yet is represented by None, never by an empty Receipt.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

REFERENCE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")


def canonicalize_reference(reference: str) -> str:
    """Return the single canonical (lower-case) form of a transaction hash."""
    return reference.strip().lower()


def is_valid_reference(reference: str) -> bool:
    """Check for a 0x-prefixed, 64 hex digit transaction hash."""
    return bool(REFERENCE_PATTERN.match(reference.strip()))


class ReceiptStatus(Enum):
    """Execution status reported in a transaction receipt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ErrorKind(Enum):
    """Reasons a payment proof is rejected."""

    ALREADY_USED = "AlreadyUsed"
    NOT_FOUND_OR_PENDING = "NotFoundOrPending"
    TRANSACTION_FAILED = "TransactionFailed"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    INSUFFICIENT_AMOUNT = "InsufficientAmount"
    VERIFICATION_ERROR = "VerificationError"
    # Never a rejection reason: labels durability problems in logs/metrics
    PERSISTENCE_DEGRADED = "PersistenceDegraded"


class VerificationState(Enum):
    """Steps of a single verification attempt."""

    RECEIVED = "received"
    CHECKED_DEDUP = "checked_dedup"
    FETCHED_RECEIPT = "fetched_receipt"
    DECODED_TRANSFER = "decoded_transfer"
    POLICY_EVALUATED = "policy_evaluated"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LogEntry:
    """One event emitted during a transaction."""

    address: str
    topics: Tuple[bytes, ...] = ()
    data: bytes = b""


@dataclass(frozen=True)
class Receipt:
    """Ledger confirmation record for a mined transaction."""

    transaction_hash: str
    status: ReceiptStatus
    block_number: int
    logs: Tuple[LogEntry, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is ReceiptStatus.SUCCEEDED


@dataclass(frozen=True)
class TransferEvent:
    """Decoded ERC-20 Transfer(from, to, value)."""

    sender: str
    recipient: str
    value: int


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of verifying one transaction reference.

    `amount` is reported for accepted payments and for insufficient ones;
    in the latter case it is informational only.
    """

    transaction_reference: str
    valid: bool
    amount: Optional[Decimal] = None
    reason: Optional[ErrorKind] = None
    message: Optional[str] = field(default=None, compare=False)

    @classmethod
    def accepted(cls, reference: str, amount: Decimal) -> "VerificationResult":
        return cls(transaction_reference=reference, valid=True, amount=amount)

    @classmethod
    def rejected(
        cls,
        reference: str,
        reason: ErrorKind,
        message: str,
        amount: Optional[Decimal] = None,
    ) -> "VerificationResult":
        return cls(
            transaction_reference=reference,
            valid=False,
            amount=amount,
            reason=reason,
            message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Render as {valid, amount?, reason?, message?}."""
        result: Dict[str, Any] = {"valid": self.valid}
        if self.amount is not None:
            result["amount"] = float(self.amount)
        if self.reason is not None:
            result["reason"] = self.reason.value
        if self.message is not None:
            result["message"] = self.message
        return result
