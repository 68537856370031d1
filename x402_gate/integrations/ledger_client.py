"""
EVM ledger client with retry logic and log decoding.

Implements:
- Transaction receipt lookup (absent receipts are a normal outcome)
- Exponential backoff for transient RPC errors
- Circuit breaker pattern
- ERC-20 Transfer event decoding
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import aiohttp
import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from x402_gate.config import Settings
from x402_gate.core.types import LogEntry, Receipt, ReceiptStatus, TransferEvent
from x402_gate.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = bytes(Web3.keccak(text="Transfer(address,address,uint256)"))

_TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)


class LedgerError(Exception):
    """Raised when the ledger cannot be queried (transport or node failure)."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize ledger error.

        Args:
            message: Error message
            retryable: Whether the same call may succeed if repeated
            original_error: Underlying exception
        """
        super().__init__(message)
        self.retryable = retryable
        self.original_error = original_error


class CircuitBreaker:
    """
    Circuit breaker for ledger RPC calls.

    Stops hammering a failing node: after `failure_threshold` consecutive
    failures calls fail fast until `timeout` seconds have passed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """
        Await `func(*args)` with circuit breaker protection.

        Raises:
            LedgerError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise LedgerError("Ledger circuit breaker is open", retryable=False)

        try:
            result = await func(*args)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def decode_transfer_log(log: LogEntry) -> Optional[TransferEvent]:
    """
    Decode one log entry as Transfer(address indexed, address indexed, uint256).

    Returns None for anything else: other events, the ERC-721 variant with an
    indexed token id, bad address padding or truncated data.
    """
    if len(log.topics) != 3 or log.topics[0] != TRANSFER_EVENT_TOPIC:
        return None
    try:
        (sender,) = abi_decode(["address"], log.topics[1])
        (recipient,) = abi_decode(["address"], log.topics[2])
        (value,) = abi_decode(["uint256"], log.data)
    except (DecodingError, ValueError, TypeError) as e:
        logger.debug("transfer_log_undecodable", address=log.address, error=str(e))
        return None
    return TransferEvent(sender=sender.lower(), recipient=recipient.lower(), value=value)


def decode_transfer_events(receipt: Receipt, token_address: str) -> List[TransferEvent]:
    """
    Decode the token's Transfer events from a receipt, in log order.

    Logs from other contracts are filtered out before decoding; entries that
    fail to decode are skipped and the scan continues.
    """
    token_address = token_address.lower()
    events = []
    for log in receipt.logs:
        if log.address.lower() != token_address:
            continue
        event = decode_transfer_log(log)
        if event is not None:
            events.append(event)
    return events


def _to_bytes(value: Any) -> bytes:
    return bytes(HexBytes(value))


def _to_log_entry(raw_log: Any) -> LogEntry:
    return LogEntry(
        address=str(raw_log["address"]).lower(),
        topics=tuple(_to_bytes(topic) for topic in raw_log.get("topics", [])),
        data=_to_bytes(raw_log.get("data", b"")),
    )


def _to_receipt(reference: str, raw_receipt: Any) -> Receipt:
    status = (
        ReceiptStatus.SUCCEEDED if raw_receipt.get("status") == 1 else ReceiptStatus.FAILED
    )
    return Receipt(
        transaction_hash=reference,
        status=status,
        block_number=int(raw_receipt.get("blockNumber") or 0),
        logs=tuple(_to_log_entry(raw_log) for raw_log in raw_receipt.get("logs", [])),
    )


class LedgerClient:
    """
    Read-only adapter to an EVM JSON-RPC node.

    Features:
    - Absent receipts returned as None, never raised
    - Automatic retry with exponential backoff for transient failures
    - Circuit breaker pattern
    - Transfer event decoding restricted to one token contract
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_multiplier: float = 0.5,
        circuit_breaker: Optional[CircuitBreaker] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize ledger client.

        Args:
            rpc_url: JSON-RPC endpoint
            timeout_seconds: Per-request timeout
            max_attempts: Attempts per call for transient failures
            backoff_multiplier: Exponential backoff multiplier (seconds)
            circuit_breaker: Optional circuit breaker
            w3: Optional preconfigured AsyncWeb3 instance
        """
        self.rpc_url = rpc_url
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._owns_provider = w3 is None
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout_seconds)},
                exception_retry_configuration=None,
            )
        )

        logger.info(
            "ledger_client_initialized",
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerClient":
        """Build a client from application settings."""
        return cls(
            rpc_url=settings.base_rpc_url,
            timeout_seconds=settings.rpc_timeout_seconds,
            max_attempts=settings.rpc_retry_attempts,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout,
            ),
        )

    @staticmethod
    def _classify_error(error: Exception) -> LedgerError:
        """Wrap a provider exception, marking connection problems as retryable."""
        if isinstance(error, LedgerError):
            return error
        return LedgerError(
            message=f"{type(error).__name__}: {error}",
            retryable=isinstance(error, _TRANSIENT_ERRORS),
            original_error=error,
        )

    async def _call(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run an RPC coroutine through the circuit breaker with retries."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, LedgerError) and e.retryable
            ),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=4),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    return await self.circuit_breaker.call(func, *args)
                except Exception as e:
                    error = self._classify_error(e)
                    logger.warning(
                        "ledger_rpc_error",
                        attempt=attempt.retry_state.attempt_number,
                        retryable=error.retryable,
                        error=str(error),
                    )
                    if error is e:
                        raise
                    raise error from e

    async def _get_receipt(self, reference: str) -> Any:
        try:
            return await self.w3.eth.get_transaction_receipt(reference)
        except TransactionNotFound:
            return None

    async def fetch_receipt(self, reference: str) -> Optional[Receipt]:
        """
        Fetch the receipt of a transaction.

        Args:
            reference: Transaction hash

        Returns:
            Optional[Receipt]: None if the transaction is unknown or not mined yet

        Raises:
            LedgerError: If the node cannot be reached or answers with an error
        """
        start_time = time.time()
        try:
            raw_receipt = await self._call(self._get_receipt, reference)
        except LedgerError:
            metrics.record_ledger_call(
                "get_transaction_receipt", "error", time.time() - start_time
            )
            raise

        duration = time.time() - start_time
        if raw_receipt is None:
            metrics.record_ledger_call("get_transaction_receipt", "not_found", duration)
            logger.info("ledger_receipt_not_found", transaction_reference=reference)
            return None

        try:
            receipt = _to_receipt(reference, raw_receipt)
        except (KeyError, TypeError, ValueError) as e:
            metrics.record_ledger_call("get_transaction_receipt", "error", duration)
            raise LedgerError(
                f"Malformed receipt for {reference}: {e}", retryable=False, original_error=e
            ) from e

        metrics.record_ledger_call("get_transaction_receipt", "found", duration)
        logger.info(
            "ledger_receipt_fetched",
            transaction_reference=reference,
            block_number=receipt.block_number,
            status=receipt.status.value,
            log_count=len(receipt.logs),
        )
        return receipt

    def decode_transfer_events(
        self, receipt: Receipt, token_address: str
    ) -> Sequence[TransferEvent]:
        """Decode the token's Transfer events from a receipt, in log order."""
        return decode_transfer_events(receipt, token_address)

    async def get_block_number(self) -> int:
        """Latest block height, used for health checks."""

        async def _block_number() -> int:
            return await self.w3.eth.block_number

        return int(await self._call(_block_number))

    async def close(self) -> None:
        """Close the provider session if this client created it."""
        if self._owns_provider:
            await self.w3.provider.disconnect()
