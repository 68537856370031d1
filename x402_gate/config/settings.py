"""Application settings using Pydantic for environment-based configuration."""
import os
from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import PaymentPolicy, canonicalize_address


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ledger Configuration
    base_rpc_url: str = Field(..., description="EVM JSON-RPC endpoint URL")
    usdc_contract_address: str = Field(..., description="Stablecoin token contract address")
    rpc_timeout_seconds: float = Field(default=10.0, gt=0, description="RPC request timeout")
    rpc_retry_attempts: int = Field(default=3, ge=1, description="Max RPC attempts per receipt")
    circuit_breaker_failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive RPC failures before opening the circuit"
    )
    circuit_breaker_timeout: int = Field(
        default=60, ge=1, description="Seconds before a half-open RPC trial call"
    )

    # Payment Policy
    wallet_address: str = Field(..., description="Address that must receive the payment")
    price_in_usdc: Decimal = Field(default=Decimal("0.1"), gt=0, description="Minimum payment")
    token_decimals: int = Field(default=6, ge=0, le=36, description="Token decimal precision")

    # x402 Payment Requirements
    network_id: str = Field(default="base", description="x402 network identifier")
    asset_name: str = Field(default="USD Coin", description="EIP-712 token name")
    asset_version: str = Field(default="2", description="EIP-712 token version")
    max_timeout_seconds: int = Field(default=60, description="x402 maxTimeoutSeconds")

    # Dedup Store Configuration
    dedup_backend: Literal["file", "redis"] = Field(
        default="file", description="Processed transaction store (file/redis)"
    )
    storage_dir: str = Field(
        default_factory=os.getcwd, description="Directory for the processed transactions file"
    )
    processed_txs_filename: str = Field(
        default="processed_txs.txt", description="Processed transactions file name"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    dedup_redis_key: str = Field(
        default="x402:processed_txs", description="Redis set holding processed transactions"
    )
    atomic_claims: bool = Field(
        default=False,
        description="Use the shared store's add-if-absent result as the dedup decision",
    )

    # Application Configuration
    app_name: str = Field(default="x402-gate", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3000, description="API port")
    admin_api_key: Optional[str] = Field(default=None, description="Key for admin endpoints")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("wallet_address", "usdc_contract_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate 0x-prefixed 40 hex character addresses."""
        return canonicalize_address(v)

    @field_validator("price_in_usdc")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        """Reject NaN and infinity."""
        if not v.is_finite():
            raise ValueError("price_in_usdc must be a finite number")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def payment_policy(self) -> PaymentPolicy:
        """Build the acceptance policy from settings."""
        return PaymentPolicy(
            recipient=self.wallet_address,
            token_address=self.usdc_contract_address,
            min_amount=self.price_in_usdc,
            decimals=self.token_decimals,
        )

    @property
    def processed_txs_path(self) -> str:
        """Full path of the processed transactions file."""
        return os.path.join(self.storage_dir, self.processed_txs_filename)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
