"""
Integration tests for the payment gate HTTP API.
"""
from typing import Any, AsyncGenerator, Callable, Dict
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from x402_gate.api import create_app, require_payment
from x402_gate.config import Settings
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.core.types import VerificationResult

from tests.conftest import USDC_ADDRESS, WALLET_ADDRESS, transfer_log, tx_hash

ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}


@pytest.fixture
def app(test_settings: Settings, verifier: PaymentVerifier) -> FastAPI:
    app = create_app(settings=test_settings, verifier=verifier)

    @app.get("/premium")
    async def premium(payment: VerificationResult = Depends(require_payment)) -> Dict[str, Any]:
        return {"content": "paid", "amount": float(payment.amount)}

    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def paid_receipt(mock_w3: MagicMock, make_receipt: Callable[..., Dict[str, Any]]) -> None:
    mock_w3.eth.get_transaction_receipt.return_value = make_receipt(
        [transfer_log(WALLET_ADDRESS, 100000)]
    )


class TestPaymentEndpoints:
    """Test suite for /payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_requirements(self, client: AsyncClient) -> None:
        response = await client.get("/payments/requirements")

        assert response.status_code == 402
        body = response.json()
        assert body["x402Version"] == 1
        requirement = body["accepts"][0]
        assert requirement["scheme"] == "exact"
        assert requirement["network"] == "base"
        assert requirement["payTo"] == WALLET_ADDRESS
        assert requirement["asset"] == USDC_ADDRESS.lower()
        assert requirement["maxAmountRequired"] == "100000"
        assert requirement["resource"] == "http://test/payments/verify"
        assert requirement["extra"] == {"name": "USD Coin", "version": "2"}

        schema = requirement["outputSchema"]
        assert schema["input"]["type"] == "http"
        assert schema["input"]["method"] == "POST"
        assert schema["input"]["bodyType"] == "json"
        assert schema["input"]["bodyFields"]["tx"]["required"] is True
        assert schema["input"]["bodyFields"]["tx"]["pattern"] == r"^0x[a-fA-F0-9]{64}$"
        assert schema["output"] == {"type": "application/json"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_accepts_once(self, client: AsyncClient, paid_receipt: None) -> None:
        response = await client.post("/payments/verify", json={"tx": tx_hash(1)})

        assert response.status_code == 200
        assert response.headers["X-402-Payment-Verified"] == "true"
        assert response.json() == {
            "valid": True,
            "amount": 0.1,
            "reason": None,
            "message": None,
            "transaction_reference": tx_hash(1),
        }

        replay = await client.post("/payments/verify", json={"tx": tx_hash(1)})

        assert replay.status_code == 402
        assert replay.json()["reason"] == "AlreadyUsed"
        assert replay.json()["providedTxHash"] == tx_hash(1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_insufficient(
        self,
        client: AsyncClient,
        mock_w3: MagicMock,
        make_receipt: Callable[..., Dict[str, Any]],
    ) -> None:
        mock_w3.eth.get_transaction_receipt.return_value = make_receipt(
            [transfer_log(WALLET_ADDRESS, 99999)]
        )

        response = await client.post("/payments/verify", json={"tx": tx_hash(1)})

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Payment Invalid"
        assert body["reason"] == "InsufficientAmount"
        assert body["amount"] == 0.099999
        assert response.headers["X-402-Price"] == "0.1"
        assert response.headers["X-402-Wallet-Address"] == WALLET_ADDRESS

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_malformed_hash(self, client: AsyncClient, mock_w3: MagicMock) -> None:
        response = await client.post("/payments/verify", json={"tx": "0x1234"})

        assert response.status_code == 402
        assert "64 hex characters" in response.json()["message"]
        mock_w3.eth.get_transaction_receipt.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback(self, client: AsyncClient, paid_receipt: None) -> None:
        await client.post("/payments/verify", json={"tx": tx_hash(1)})

        response = await client.post(
            "/payments/rollback", json={"tx": tx_hash(1)}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json() == {"transaction_reference": tx_hash(1), "rolled_back": True}

        again = await client.post(
            "/payments/rollback", json={"tx": tx_hash(1)}, headers=ADMIN_HEADERS
        )
        assert again.json()["rolled_back"] is False

        retried = await client.post("/payments/verify", json={"tx": tx_hash(1)})
        assert retried.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback_requires_api_key(self, client: AsyncClient, paid_receipt: None) -> None:
        """A payer cannot release their own payment to reuse it."""
        paid = await client.get("/premium", headers={"X-402-Payment-Tx": tx_hash(7)})
        assert paid.status_code == 200

        response = await client.post("/payments/rollback", json={"tx": tx_hash(7)})
        assert response.status_code == 403

        replay = await client.get("/premium", headers={"X-402-Payment-Tx": tx_hash(7)})
        assert replay.status_code == 402
        assert replay.json()["reason"] == "AlreadyUsed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback_malformed_hash(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/rollback", json={"tx": "nope"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 400


class TestRequirePayment:
    """Test suite for the require_payment dependency."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_payment_returns_requirements(self, client: AsyncClient) -> None:
        response = await client.get("/premium")

        assert response.status_code == 402
        requirement = response.json()["accepts"][0]
        assert requirement["resource"] == "http://test/premium"
        assert requirement["outputSchema"]["input"]["method"] == "GET"
        assert "bodyFields" not in requirement["outputSchema"]["input"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_header(self, client: AsyncClient, paid_receipt: None) -> None:
        response = await client.get("/premium", headers={"X-402-Payment-Tx": tx_hash(1)})

        assert response.status_code == 200
        assert response.json() == {"content": "paid", "amount": 0.1}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_query_param_replay(self, client: AsyncClient, paid_receipt: None) -> None:
        first = await client.get("/premium", params={"tx": tx_hash(1)})
        second = await client.get("/premium", params={"tx": tx_hash(1)})

        assert first.status_code == 200
        assert second.status_code == 402
        assert second.json()["reason"] == "AlreadyUsed"
        assert second.headers["X-402-Accept-Payment"] == "base-usdc"


class TestAdminEndpoints:
    """Test suite for /admin."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_requires_api_key(self, client: AsyncClient) -> None:
        assert (await client.get("/admin/processed")).status_code == 403
        wrong = await client.get("/admin/processed", headers={"X-API-Key": "wrong"})
        assert wrong.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_count_and_clear(self, client: AsyncClient, paid_receipt: None) -> None:
        await client.post("/payments/verify", json={"tx": tx_hash(1)})

        count = await client.get("/admin/processed", headers=ADMIN_HEADERS)
        assert count.json() == {"count": 1}

        cleared = await client.delete("/admin/processed", headers=ADMIN_HEADERS)
        assert cleared.json() == {"count": 0}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_disabled_without_configured_key(
        self, test_settings: Settings, verifier: PaymentVerifier
    ) -> None:
        app = create_app(
            settings=test_settings.model_copy(update={"admin_api_key": None}),
            verifier=verifier,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/admin/processed", headers=ADMIN_HEADERS)

        assert response.status_code == 403


class TestMonitoringEndpoints:
    """Test suite for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_reports_dependencies(
        self, client: AsyncClient, verifier: PaymentVerifier
    ) -> None:
        with patch.object(
            verifier.ledger_client, "get_block_number", AsyncMock(return_value=1234)
        ):
            response = await client.get("/health")

        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["ledger"]["block_number"] == 1234
        assert body["checks"]["dedup_store"]["backend"] == "file"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_fails_when_ledger_unreachable(
        self, client: AsyncClient, verifier: PaymentVerifier
    ) -> None:
        from x402_gate.integrations.ledger_client import LedgerError

        with patch.object(
            verifier.ledger_client,
            "get_block_number",
            AsyncMock(side_effect=LedgerError("connection refused")),
        ):
            response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient, paid_receipt: None) -> None:
        await client.post("/payments/verify", json={"tx": tx_hash(1)})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_verifications_total" in response.text
