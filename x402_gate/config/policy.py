"""
Payment policy - what counts as an acceptable payment.

The policy is fixed for the process lifetime. Invalid policy must stop the
process before it serves a single request, so every field is validated here.
"""
import re
from decimal import ROUND_CEILING, Decimal, localcontext

from pydantic import BaseModel, ConfigDict, Field, field_validator

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

# uint256 has at most 78 decimal digits
_AMOUNT_PRECISION = 80


def is_valid_address(address: str) -> bool:
    """Check for a 0x-prefixed, 40 hex digit account address."""
    return bool(ADDRESS_PATTERN.match(address))


def canonicalize_address(address: str) -> str:
    """
    Validate and lower-case an account address.

    Raises:
        ValueError: If the address is not 0x followed by 40 hex digits
    """
    address = address.strip()
    if not is_valid_address(address):
        raise ValueError(
            f"Invalid address format: {address!r}. Must be 0x followed by 40 hex characters"
        )
    return address.lower()


class PaymentPolicy(BaseModel):
    """
    Acceptance policy for incoming token transfers.

    Amounts on chain are raw integers in the token's smallest unit; the
    policy minimum is human-scale. `decimals` bridges the two.
    """

    model_config = ConfigDict(frozen=True)

    recipient: str = Field(..., description="Expected recipient address")
    token_address: str = Field(..., description="Token contract emitting Transfer events")
    min_amount: Decimal = Field(..., gt=0, description="Minimum human-scale amount")
    decimals: int = Field(default=6, ge=0, le=36, description="Token decimal precision")

    @field_validator("recipient", "token_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Canonicalize addresses to lower-case."""
        return canonicalize_address(v)

    @field_validator("min_amount")
    @classmethod
    def validate_min_amount(cls, v: Decimal) -> Decimal:
        """Reject NaN and infinity, which pass numeric parsing."""
        if not v.is_finite():
            raise ValueError("Minimum amount must be a finite number")
        return v

    def to_human(self, raw_amount: int) -> Decimal:
        """
        Convert a raw token amount to human scale.

        Exact for every uint256 value: 150000 with 6 decimals is 0.15, and
        10000000 is 10 (never 1E+1).
        """
        with localcontext() as ctx:
            ctx.prec = _AMOUNT_PRECISION
            amount = Decimal(raw_amount).scaleb(-self.decimals).normalize()
            if amount.as_tuple().exponent > 0:
                amount = amount.quantize(Decimal(1))
            return amount

    def min_amount_raw(self) -> int:
        """Minimum amount in the token's smallest unit, rounded up."""
        with localcontext() as ctx:
            ctx.prec = _AMOUNT_PRECISION
            scaled = self.min_amount.scaleb(self.decimals)
            return int(scaled.to_integral_value(rounding=ROUND_CEILING))

    def is_sufficient(self, amount: Decimal) -> bool:
        """Check a human-scale amount against the minimum."""
        return amount >= self.min_amount
