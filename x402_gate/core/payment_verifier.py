"""
Payment verifier with replay prevention.

Orchestrates one verification attempt:
1. Canonicalize the transaction reference
2. Reject references already accepted (no ledger call), first retrying a
   failed startup load of the processed set
3. Fetch the receipt from the ledger
4. Require a successful receipt
5. Select the first token transfer to the expected recipient
6. Compare the amount with the policy minimum
7. Claim the reference in the processed set

Every rejection is returned as a VerificationResult; nothing raises past
verify().
"""
import time
from decimal import Decimal
from typing import Optional

import structlog

from x402_gate.config import PaymentPolicy, Settings, get_settings
from x402_gate.integrations.ledger_client import LedgerClient, LedgerError
from x402_gate.monitoring.metrics import metrics

from .dedup_store import create_dedup_store
from .processed_set import ProcessedSet
from .types import (
    ErrorKind,
    VerificationResult,
    VerificationState,
    canonicalize_reference,
)

logger = structlog.get_logger(__name__)


class PaymentVerifier:
    """
    Verification state machine and rollback path.

    Owns the processed set and is its only writer.
    """

    def __init__(
        self,
        ledger_client: LedgerClient,
        policy: PaymentPolicy,
        processed: ProcessedSet,
    ):
        """
        Initialize payment verifier.

        Args:
            ledger_client: Read-only ledger adapter
            policy: Acceptance policy
            processed: Processed set; a failed load is retried on first use
        """
        self.ledger_client = ledger_client
        self.policy = policy
        self.processed = processed

        logger.info(
            "payment_verifier_initialized",
            recipient=policy.recipient,
            token_address=policy.token_address,
            min_amount=f"{policy.min_amount:f}",
            decimals=policy.decimals,
            backend=processed.store.backend_name,
            atomic_claims=processed.atomic_claims,
        )

    @classmethod
    async def create(cls, settings: Optional[Settings] = None) -> "PaymentVerifier":
        """
        Build a verifier from settings and load the processed set.

        A store that cannot be read leaves the verifier running in degraded
        mode; invalid policy raises before anything is built.
        """
        settings = settings or get_settings()
        policy = settings.payment_policy()
        processed = ProcessedSet(
            create_dedup_store(settings), atomic_claims=settings.atomic_claims
        )
        await processed.load()
        return cls(LedgerClient.from_settings(settings), policy, processed)

    @property
    def recipient(self) -> str:
        """Address payments must be sent to."""
        return self.policy.recipient

    def _transition(self, reference: str, state: VerificationState, **context: object) -> None:
        logger.debug(
            "payment_verification_state",
            transaction_reference=reference,
            state=state.value,
            **context,
        )

    def _reject(
        self,
        reference: str,
        reason: ErrorKind,
        message: str,
        amount: Optional[Decimal] = None,
    ) -> VerificationResult:
        self._transition(reference, VerificationState.REJECTED, reason=reason.value)
        logger.info(
            "payment_verification_rejected",
            transaction_reference=reference,
            reason=reason.value,
            amount=f"{amount:f}" if amount is not None else None,
        )
        return VerificationResult.rejected(reference, reason, message, amount=amount)

    async def verify(self, transaction_reference: str) -> VerificationResult:
        """
        Verify a claimed payment and accept it at most once.

        Args:
            transaction_reference: Transaction hash, any letter case

        Returns:
            VerificationResult: valid with the paid amount, or a rejection
        """
        start_time = time.time()
        result = await self._verify(canonicalize_reference(transaction_reference))
        outcome = "accepted" if result.valid else result.reason.value
        metrics.record_verification(outcome, time.time() - start_time)
        return result

    async def _verify(self, reference: str) -> VerificationResult:
        self._transition(reference, VerificationState.RECEIVED)
        logger.info("payment_verification_started", transaction_reference=reference)

        # The startup load failed: references already in the store are unknown
        await self.processed.ensure_loaded()
        if reference in self.processed:
            return self._reject(
                reference, ErrorKind.ALREADY_USED, "This transaction has already been used"
            )
        self._transition(reference, VerificationState.CHECKED_DEDUP)

        try:
            receipt = await self.ledger_client.fetch_receipt(reference)
        except LedgerError as e:
            logger.error(
                "payment_verification_ledger_error",
                transaction_reference=reference,
                retryable=e.retryable,
                error=str(e),
            )
            return self._reject(
                reference,
                ErrorKind.VERIFICATION_ERROR,
                f"Could not verify the transaction, please retry: {e}",
            )
        except Exception as e:
            logger.error(
                "payment_verification_unexpected_error",
                transaction_reference=reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._reject(
                reference,
                ErrorKind.VERIFICATION_ERROR,
                "An unexpected error occurred during verification, please retry",
            )

        if receipt is None:
            return self._reject(
                reference,
                ErrorKind.NOT_FOUND_OR_PENDING,
                "Transaction not found or not yet confirmed, retry after block confirmation",
            )
        self._transition(
            reference, VerificationState.FETCHED_RECEIPT, block_number=receipt.block_number
        )

        if not receipt.succeeded:
            return self._reject(
                reference, ErrorKind.TRANSACTION_FAILED, "Transaction failed (status: 0)"
            )

        transfers = self.ledger_client.decode_transfer_events(
            receipt, self.policy.token_address
        )
        selected = next(
            (t for t in transfers if t.recipient == self.policy.recipient), None
        )
        if selected is None:
            return self._reject(
                reference,
                ErrorKind.RECIPIENT_MISMATCH,
                f"No token transfer to {self.policy.recipient} found in transaction",
            )
        amount = self.policy.to_human(selected.value)
        self._transition(
            reference,
            VerificationState.DECODED_TRANSFER,
            sender=selected.sender,
            raw_value=selected.value,
            transfer_count=len(transfers),
        )

        sufficient = self.policy.is_sufficient(amount)
        self._transition(reference, VerificationState.POLICY_EVALUATED, sufficient=sufficient)
        if not sufficient:
            return self._reject(
                reference,
                ErrorKind.INSUFFICIENT_AMOUNT,
                f"Insufficient payment: required {self.policy.min_amount:f}, "
                f"received {amount:f}",
                amount=amount,
            )

        if not await self.processed.claim(reference):
            return self._reject(
                reference, ErrorKind.ALREADY_USED, "This transaction has already been used"
            )

        self._transition(reference, VerificationState.ACCEPTED)
        logger.info(
            "payment_verification_accepted",
            transaction_reference=reference,
            amount=f"{amount:f}",
            sender=selected.sender,
            block_number=receipt.block_number,
        )
        return VerificationResult.accepted(reference, amount)

    async def rollback(self, transaction_reference: str) -> bool:
        """
        Undo an acceptance so the caller may retry with the same proof.

        Args:
            transaction_reference: Previously accepted transaction hash

        Returns:
            bool: True if the reference was accepted and is now released
        """
        reference = canonicalize_reference(transaction_reference)
        removed = await self.processed.release(reference)
        metrics.record_rollback(removed)
        if removed:
            logger.info("payment_rolled_back", transaction_reference=reference)
        else:
            logger.info("payment_rollback_not_found", transaction_reference=reference)
        return removed

    def get_processed_count(self) -> int:
        """Number of accepted references held in memory."""
        return len(self.processed)

    async def clear_all(self) -> None:
        """Forget every accepted reference (administrative/testing use)."""
        count = len(self.processed)
        await self.processed.clear()
        logger.warning("processed_transactions_cleared", count=count)

    async def close(self) -> None:
        """Release ledger and store connections."""
        await self.ledger_client.close()
        await self.processed.store.close()
