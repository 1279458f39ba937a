# src/core/escrow/gateway.py
"""
Интерфейс платёжного шлюза, который нужен эскроу.
Реализация для Paystack: src.services.payments.gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class GatewayError(Exception):
    """Шлюз отклонил запрос."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GatewayTransientError(GatewayError):
    """Временный сбой шлюза (сеть, таймаут, 5xx): запрос можно повторить."""


class GatewayAlreadyRefundedError(GatewayError):
    """Платёж уже возвращён шлюзом: повторять возврат не нужно."""


@dataclass(frozen=True)
class GatewayCheckout:
    """Результат инициализации платежа."""
    reference: str
    authorization_url: str
    access_code: str | None = None


class PaymentGateway(Protocol):
    """Операции шлюза, используемые эскроу."""

    @property
    def is_configured(self) -> bool:
        ...

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayCheckout:
        ...

    async def refund(self, reference: str, amount_minor: int) -> dict[str, Any]:
        ...
