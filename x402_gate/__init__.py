"""
x402 Payment Gate

Gatekeeps a paid API behind on-chain stablecoin payment proof:
1. Verifies ERC-20 Transfer receipts against an EVM node
2. Prevents replay of transaction references across restarts
3. Supports rollback when the paid-for work fails
"""

__version__ = "1.0.0"
