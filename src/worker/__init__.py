# src/worker/__init__.py
"""
Фоновые воркеры эскроу.
"""

from src.worker.base import BaseWorker, PeriodicWorker
from src.worker.escrow import DeliveryConfirmationWorker, EscrowReleaseTimerWorker

__all__ = ["BaseWorker", "PeriodicWorker", "DeliveryConfirmationWorker", "EscrowReleaseTimerWorker"]
