"""Configuration package for the payment gate."""
from .policy import PaymentPolicy, canonicalize_address, is_valid_address
from .settings import get_settings, Settings

__all__ = [
    "PaymentPolicy",
    "Settings",
    "canonicalize_address",
    "get_settings",
    "is_valid_address",
]
