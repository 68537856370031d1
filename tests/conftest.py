"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from hexbytes import HexBytes

from x402_gate.config import PaymentPolicy, Settings
from x402_gate.core.dedup_store import FileDedupStore
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.core.processed_set import ProcessedSet
from x402_gate.integrations.ledger_client import TRANSFER_EVENT_TOPIC, LedgerClient

USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WALLET_ADDRESS = "0x742d35cc6634c0532925a3b844bc9e7595f0beb1"
PAYER_ADDRESS = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
OTHER_ADDRESS = "0xfb6916095ca1df60bb79ce92ce3ea74c37c5d359"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrent request scenarios")
    config.addinivalue_line("markers", "integration: tests exercising the HTTP layer")


def tx_hash(n: int) -> str:
    """Deterministic 0x-prefixed 64 hex digit transaction hash."""
    return "0x" + format(n, "064x")


def address_topic(address: str) -> HexBytes:
    """Left-pad an address to a 32-byte indexed topic."""
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def transfer_log(
    recipient: str,
    value: int,
    sender: str = PAYER_ADDRESS,
    token: str = USDC_ADDRESS,
) -> Dict[str, Any]:
    """Raw Transfer log as returned by web3."""
    return {
        "address": token,
        "topics": [
            HexBytes(TRANSFER_EVENT_TOPIC),
            address_topic(sender),
            address_topic(recipient),
        ],
        "data": HexBytes(value.to_bytes(32, "big")),
    }


def raw_receipt(logs: List[Dict[str, Any]], status: int = 1, block_number: int = 1234) -> Dict[str, Any]:
    """Raw receipt as returned by web3."""
    return {"status": status, "blockNumber": block_number, "logs": logs}


@pytest.fixture
def make_transfer_log() -> Callable[..., Dict[str, Any]]:
    return transfer_log


@pytest.fixture
def make_receipt() -> Callable[..., Dict[str, Any]]:
    return raw_receipt


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        base_rpc_url="http://localhost:8545",
        usdc_contract_address=USDC_ADDRESS,
        wallet_address=WALLET_ADDRESS,
        price_in_usdc=Decimal("0.1"),
        storage_dir=str(tmp_path),
        app_name="x402-gate-test",
        app_env="test",
        log_level="DEBUG",
        admin_api_key="test-admin-key",
    )


@pytest.fixture
def policy() -> PaymentPolicy:
    return PaymentPolicy(
        recipient=WALLET_ADDRESS,
        token_address=USDC_ADDRESS,
        min_amount=Decimal("0.1"),
        decimals=6,
    )


@pytest.fixture
def mock_w3() -> MagicMock:
    """AsyncWeb3 stand-in; set eth.get_transaction_receipt per test."""
    w3 = MagicMock()
    w3.eth.get_transaction_receipt = AsyncMock(return_value=None)
    return w3


@pytest.fixture
def ledger_client(mock_w3: MagicMock) -> LedgerClient:
    return LedgerClient(
        "http://localhost:8545",
        max_attempts=3,
        backoff_multiplier=0,
        w3=mock_w3,
    )


@pytest.fixture
def file_store(tmp_path: Any) -> FileDedupStore:
    return FileDedupStore(str(tmp_path / "processed_txs.txt"))


@pytest_asyncio.fixture
async def processed_set(file_store: FileDedupStore) -> ProcessedSet:
    processed = ProcessedSet(file_store)
    await processed.load()
    return processed


@pytest.fixture
def verifier(
    ledger_client: LedgerClient, policy: PaymentPolicy, processed_set: ProcessedSet
) -> PaymentVerifier:
    return PaymentVerifier(ledger_client, policy, processed_set)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """redis.asyncio client stand-in backed by a Python set."""
    members: set = set()
    client = AsyncMock()

    async def sadd(key: str, *values: str) -> int:
        added = [v for v in values if v not in members]
        members.update(added)
        return len(added)

    async def srem(key: str, *values: str) -> int:
        removed = [v for v in values if v in members]
        members.difference_update(removed)
        return len(removed)

    async def smembers(key: str) -> set:
        return set(members)

    async def delete(key: str) -> int:
        count = 1 if members else 0
        members.clear()
        return count

    client.sadd.side_effect = sadd
    client.srem.side_effect = srem
    client.smembers.side_effect = smembers
    client.delete.side_effect = delete
    client.ping.return_value = True
    client.members = members
    return client
