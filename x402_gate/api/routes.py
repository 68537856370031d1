"""
API routes for payment verification.
"""
import secrets
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from x402_gate.config import Settings
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.core.types import (
    REFERENCE_PATTERN,
    VerificationResult,
    canonicalize_reference,
    is_valid_reference,
)
from x402_gate.monitoring.health import HealthCheck

from .schemas import (
    HealthCheckResponse,
    PaymentRequiredResponse,
    ProcessedCountResponse,
    RollbackRequest,
    RollbackResponse,
    VerificationResponse,
    VerifyPaymentRequest,
    build_payment_requirements,
)

logger = structlog.get_logger(__name__)

PAYMENT_HEADER = "X-402-Payment-Tx"
INVALID_REFERENCE_MESSAGE = (
    'Invalid transaction hash format: must be "0x" followed by 64 hex characters'
)
VERIFY_BODY_FIELDS = {
    "tx": {
        "type": "string",
        "description": "Payment transaction hash",
        "required": True,
        "pattern": REFERENCE_PATTERN.pattern,
    },
}

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


class PaymentRequired(Exception):
    """Rendered as an HTTP 402 response with `content` as the body."""

    def __init__(self, content: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        super().__init__(content.get("message") or content.get("error"))
        self.content = content
        self.headers = headers or {}


async def payment_required_handler(request: Request, exc: PaymentRequired) -> JSONResponse:
    """Render PaymentRequired exceptions."""
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=exc.content,
        headers=exc.headers,
    )


def get_verifier(request: Request) -> PaymentVerifier:
    """Dependency returning the application's payment verifier."""
    return request.app.state.verifier


def get_app_settings(request: Request) -> Settings:
    """Dependency returning the application's settings."""
    return request.app.state.settings


def get_health_check(request: Request) -> HealthCheck:
    """Dependency returning the application's health check service."""
    return request.app.state.health_check


def _rejection_headers(settings: Settings, verifier: PaymentVerifier) -> Dict[str, str]:
    return {
        "X-402-Accept-Payment": f"{settings.network_id}-usdc",
        "X-402-Price": f"{verifier.policy.min_amount:f}",
        "X-402-Wallet-Address": verifier.recipient,
    }


def _rejection_content(result: VerificationResult, provided: str) -> Dict[str, Any]:
    content: Dict[str, Any] = {
        "error": "Payment Invalid",
        "message": result.message or "Payment verification failed",
        "reason": result.reason.value if result.reason else None,
        "providedTxHash": provided,
    }
    if result.amount is not None:
        content["amount"] = float(result.amount)
    return content


def _invalid_reference(provided: str) -> PaymentRequired:
    logger.info("payment_reference_malformed", provided=provided)
    return PaymentRequired(
        {
            "error": "Payment Invalid",
            "message": INVALID_REFERENCE_MESSAGE,
            "providedTxHash": provided,
        }
    )


def _resource_url(request: Request) -> str:
    return str(request.url.remove_query_params("tx"))


async def require_payment(
    request: Request,
    verifier: PaymentVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_app_settings),
) -> VerificationResult:
    """
    Dependency gating a route behind a verified payment.

    The transaction hash is read from the X-402-Payment-Tx header, then the
    `tx` query parameter. Routes whose work fails after this dependency
    accepted a payment should call `verifier.rollback` in process so the
    caller can retry with the same hash.

    Raises:
        PaymentRequired: No hash, a malformed hash, or a rejected payment
    """
    provided = request.headers.get(PAYMENT_HEADER) or request.query_params.get("tx")

    if not provided:
        requirements = build_payment_requirements(
            settings,
            verifier.policy,
            resource=_resource_url(request),
            method=request.method,
        )
        raise PaymentRequired(requirements.model_dump(by_alias=True, exclude_none=True))

    if not is_valid_reference(provided):
        raise _invalid_reference(provided)

    result = await verifier.verify(provided)
    if not result.valid:
        raise PaymentRequired(
            _rejection_content(result, provided),
            headers=_rejection_headers(settings, verifier),
        )
    return result


async def require_admin(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Dependency checking the admin API key header."""
    provided = request.headers.get(settings.api_key_header)
    if not settings.admin_api_key or not provided or not secrets.compare_digest(
        provided, settings.admin_api_key
    ):
        logger.warning("admin_access_denied", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@payment_router.get(
    "/requirements",
    response_model=PaymentRequiredResponse,
    status_code=status.HTTP_402_PAYMENT_REQUIRED,
    summary="Payment requirements",
    description="Describe the payment expected by this service (x402)",
)
async def payment_requirements(
    request: Request,
    verifier: PaymentVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Return the x402 payment requirements."""
    resource = str(request.url_for("verify_payment"))
    requirements = build_payment_requirements(
        settings,
        verifier.policy,
        resource=resource,
        method="POST",
        body_fields=VERIFY_BODY_FIELDS,
    )
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=requirements.model_dump(by_alias=True, exclude_none=True),
    )


@payment_router.post(
    "/verify",
    response_model=VerificationResponse,
    summary="Verify a payment",
    description="Verify an on-chain payment and accept it at most once",
    name="verify_payment",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    response: Response,
    verifier: PaymentVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    """
    Verify a payment.

    Answers 200 when accepted and 402 otherwise; a second verification of
    the same hash is rejected as already used.
    """
    if not is_valid_reference(request.tx):
        raise _invalid_reference(request.tx)

    logger.info("api_verify_payment_request", transaction_reference=request.tx)
    result = await verifier.verify(request.tx)

    if not result.valid:
        raise PaymentRequired(
            _rejection_content(result, request.tx),
            headers=_rejection_headers(settings, verifier),
        )

    response.headers["X-402-Payment-Verified"] = "true"
    return {**result.to_dict(), "transaction_reference": result.transaction_reference}


@payment_router.post(
    "/rollback",
    response_model=RollbackResponse,
    summary="Roll back a payment",
    description="Release an accepted payment after the paid work failed (admin key required)",
    dependencies=[Depends(require_admin)],
)
async def rollback_payment(
    request: RollbackRequest,
    verifier: PaymentVerifier = Depends(get_verifier),
) -> Dict[str, Any]:
    """
    Release an accepted payment so it can be verified again.

    Only the service running the paid work may call this, after that work
    failed; the payer never holds the admin key.
    """
    if not is_valid_reference(request.tx):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_REFERENCE_MESSAGE
        )
    rolled_back = await verifier.rollback(request.tx)
    return {
        "transaction_reference": canonicalize_reference(request.tx),
        "rolled_back": rolled_back,
    }


@admin_router.get(
    "/processed",
    response_model=ProcessedCountResponse,
    summary="Processed transaction count",
    dependencies=[Depends(require_admin)],
)
async def processed_count(
    verifier: PaymentVerifier = Depends(get_verifier),
) -> Dict[str, Any]:
    """Number of accepted transaction references."""
    return {"count": verifier.get_processed_count()}


@admin_router.delete(
    "/processed",
    response_model=ProcessedCountResponse,
    summary="Clear processed transactions",
    description="Forget every accepted transaction (testing only)",
    dependencies=[Depends(require_admin)],
)
async def clear_processed(
    verifier: PaymentVerifier = Depends(get_verifier),
) -> Dict[str, Any]:
    """Clear the processed transaction set."""
    await verifier.clear_all()
    return {"count": verifier.get_processed_count()}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness check endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
