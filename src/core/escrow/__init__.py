# src/core/escrow/__init__.py
"""
Домен эскроу.
Удержание оплаты заказа до подтверждения доставки, споры, выплаты.
"""

from src.core.escrow.exceptions import (
    DisputeNotFoundError,
    EscrowConcurrencyError,
    EscrowError,
    EscrowInconsistencyError,
    EscrowNotFoundError,
    EscrowPermissionError,
    EscrowValidationError,
    InvalidTransitionError,
    PaymentIntegrityError,
)
from src.core.escrow.models import Dispute, EscrowTransaction, TransitionResult
from src.core.escrow.repository import EscrowRepository
from src.core.escrow.service import EscrowService, ReconcileReport
from src.core.escrow.state_machine import EscrowStateMachine
from src.core.escrow.wallet import WalletRepository, WalletService

__all__ = [
    "DisputeNotFoundError",
    "EscrowConcurrencyError",
    "EscrowError",
    "EscrowInconsistencyError",
    "EscrowNotFoundError",
    "EscrowPermissionError",
    "EscrowValidationError",
    "InvalidTransitionError",
    "PaymentIntegrityError",
    "Dispute",
    "EscrowTransaction",
    "TransitionResult",
    "EscrowRepository",
    "EscrowService",
    "ReconcileReport",
    "EscrowStateMachine",
    "WalletRepository",
    "WalletService",
]
