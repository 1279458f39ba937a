# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бизнес-логика эскроу и ограничения частоты запросов.
"""

from src.core.escrow import EscrowService, WalletService
from src.core.rate_limit import RateLimiter

__all__ = [
    "EscrowService",
    "WalletService",
    "RateLimiter",
]
