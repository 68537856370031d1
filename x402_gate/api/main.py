"""
Main FastAPI application.

Payment gate API with:
- Payment verification and rollback
- x402 payment requirements
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from x402_gate import __version__
from x402_gate.config import Settings, get_settings
from x402_gate.core.payment_verifier import PaymentVerifier
from x402_gate.monitoring.health import HealthCheck
from x402_gate.monitoring.logging import setup_logging

from .routes import (
    PaymentRequired,
    admin_router,
    monitoring_router,
    payment_required_handler,
    payment_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Invalid policy configuration raises here, so the server never starts
    accepting payments under a bad policy.
    """
    settings = app.state.settings or get_settings()
    app.state.settings = settings
    setup_logging(settings)

    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        dedup_backend=settings.dedup_backend,
        network=settings.network_id,
    )

    owns_verifier = app.state.verifier is None
    if owns_verifier:
        app.state.verifier = await PaymentVerifier.create(settings)
    app.state.health_check = HealthCheck(app.state.verifier)

    yield

    logger.info("application_shutdown")
    if owns_verifier:
        try:
            await app.state.verifier.close()
            logger.info("verifier_connections_closed")
        except Exception as e:
            logger.error("verifier_shutdown_error", error=str(e))


def create_app(
    settings: Optional[Settings] = None,
    verifier: Optional[PaymentVerifier] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Optional settings (loaded from the environment at startup otherwise)
        verifier: Optional prebuilt verifier (built from settings at startup otherwise)
    """
    app = FastAPI(
        title="x402 Payment Gate",
        description=(
            "Gatekeeps a paid API behind on-chain USDC payment proof. "
            "Features: receipt verification, replay prevention, rollback, "
            "and x402 payment requirements."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.verifier = verifier
    if verifier is not None:
        app.state.health_check = HealthCheck(verifier)

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.add_exception_handler(PaymentRequired, payment_required_handler)

    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root(request: Request) -> dict[str, Any]:
        """Root endpoint with API information."""
        verifier: PaymentVerifier = request.app.state.verifier
        return {
            "service": "x402-gate",
            "version": __version__,
            "status": "operational",
            "wallet_address": verifier.recipient,
            "price": f"{verifier.policy.min_amount:f}",
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "x402_gate.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
