"""FastAPI application and routes."""
from .main import app, create_app
from .routes import PaymentRequired, require_payment
from .schemas import (
    PaymentRequiredResponse,
    VerificationResponse,
    VerifyPaymentRequest,
    build_payment_requirements,
)

__all__ = [
    "app",
    "create_app",
    "PaymentRequired",
    "PaymentRequiredResponse",
    "VerificationResponse",
    "VerifyPaymentRequest",
    "build_payment_requirements",
    "require_payment",
]
