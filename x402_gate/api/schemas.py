"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from x402_gate.config import PaymentPolicy, Settings

X402_VERSION = 1


class VerifyPaymentRequest(BaseModel):
    """Request schema for verifying a payment."""

    tx: str = Field(..., min_length=1, description="Payment transaction hash")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"tx": "0x" + "ab" * 32},
            ]
        }
    }


class RollbackRequest(BaseModel):
    """Request schema for releasing an accepted payment."""

    tx: str = Field(..., min_length=1, description="Previously accepted transaction hash")


class VerificationResponse(BaseModel):
    """Response schema for a verification outcome."""

    valid: bool = Field(..., description="Whether the payment was accepted")
    amount: Optional[float] = Field(default=None, description="Observed amount (human scale)")
    reason: Optional[str] = Field(default=None, description="Rejection kind")
    message: Optional[str] = Field(default=None, description="Human-readable explanation")
    transaction_reference: str = Field(..., description="Canonical transaction hash")


class RollbackResponse(BaseModel):
    """Response schema for a rollback."""

    transaction_reference: str = Field(..., description="Canonical transaction hash")
    rolled_back: bool = Field(..., description="Whether an accepted payment was released")


class ProcessedCountResponse(BaseModel):
    """Response schema for processed transaction statistics."""

    count: int = Field(..., description="Number of accepted transaction references")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class _X402Model(BaseModel):
    """Serialized with camelCase keys, as the x402 protocol expects."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AssetExtra(_X402Model):
    name: str
    version: str


class HttpInputSchema(_X402Model):
    """How a client calls the paid resource."""

    type: str = "http"
    method: str = "GET"
    discoverable: bool = True
    body_type: Optional[str] = None
    body_fields: Optional[Dict[str, Any]] = None


class OutputSchema(_X402Model):
    input: HttpInputSchema
    output: Dict[str, Any] = Field(default_factory=lambda: {"type": "application/json"})


class PaymentRequirement(_X402Model):
    """One accepted payment option in a 402 response."""

    scheme: str = "exact"
    network: str
    max_amount_required: str = Field(..., description="Minimum amount in smallest token units")
    resource: str
    description: str
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int
    asset: str
    output_schema: Optional[OutputSchema] = None
    extra: Optional[AssetExtra] = None


class PaymentRequiredResponse(_X402Model):
    """Body of an HTTP 402 Payment Required response."""

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    error: str = "X-PAYMENT header is required"
    accepts: List[PaymentRequirement]


def build_payment_requirements(
    settings: Settings,
    policy: PaymentPolicy,
    resource: str,
    description: Optional[str] = None,
    error: Optional[str] = None,
    method: str = "GET",
    body_fields: Optional[Dict[str, Any]] = None,
    output_type: str = "application/json",
) -> PaymentRequiredResponse:
    """
    Describe the payment that unlocks `resource`.

    Args:
        settings: Application settings (network and asset metadata)
        policy: Acceptance policy (recipient, minimum, decimals)
        resource: URL of the paid resource
        description: Optional human-readable description
        error: Optional error message for the response
        method: HTTP method clients use on `resource`
        body_fields: JSON body fields `resource` expects, if any
        output_type: Media type `resource` returns once paid

    Returns:
        PaymentRequiredResponse: x402 payment requirements
    """
    requirement = PaymentRequirement(
        network=settings.network_id,
        max_amount_required=str(policy.min_amount_raw()),
        resource=resource,
        description=description
        or f"{settings.app_name} paid API. Price: {policy.min_amount:f} USDC.",
        pay_to=policy.recipient,
        max_timeout_seconds=settings.max_timeout_seconds,
        asset=policy.token_address,
        output_schema=OutputSchema(
            input=HttpInputSchema(
                method=method,
                body_type="json" if body_fields else None,
                body_fields=body_fields,
            ),
            output={"type": output_type},
        ),
        extra=AssetExtra(name=settings.asset_name, version=settings.asset_version),
    )
    response = PaymentRequiredResponse(accepts=[requirement])
    if error:
        response.error = error
    return response
