"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Dedup store reachability
- Ledger RPC reachability
"""
from typing import Any, Dict

import structlog

from x402_gate.core.dedup_store import DedupStoreError
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.integrations.ledger_client import LedgerError

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the verifier's dependencies.

    Provides:
    - Dedup store check (including degraded-load state)
    - Ledger RPC check
    - Overall system health status
    """

    def __init__(self, verifier: PaymentVerifier) -> None:
        self.verifier = verifier

    async def check_dedup_store(self) -> Dict[str, Any]:
        """
        Check dedup store reachability.

        Raises:
            HealthCheckError: If the store cannot be reached
        """
        processed = self.verifier.processed
        try:
            await processed.store.ping()
        except DedupStoreError as e:
            logger.error("dedup_store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Dedup store health check failed: {str(e)}")

        await processed.ensure_loaded()
        return {
            "status": "healthy",
            "service": "dedup_store",
            "backend": processed.store.backend_name,
            "degraded": processed.degraded,
            "loaded": processed.loaded,
            "processed_count": len(processed),
        }

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check ledger RPC reachability.

        Raises:
            HealthCheckError: If the node cannot be reached
        """
        try:
            block_number = await self.verifier.ledger_client.get_block_number()
        except LedgerError as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "ledger",
            "block_number": block_number,
            "circuit_breaker": self.verifier.ledger_client.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        try:
            checks["dedup_store"] = await self.check_dedup_store()
        except HealthCheckError as e:
            checks["dedup_store"] = {
                "status": "unhealthy",
                "service": "dedup_store",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["ledger"] = await self.check_ledger()
        except HealthCheckError as e:
            checks["ledger"] = {
                "status": "unhealthy",
                "service": "ledger",
                "error": str(e),
            }
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness check.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness check: every dependency must be available."""
        return await self.check_all()
