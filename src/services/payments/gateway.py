# src/services/payments/gateway.py
"""
Клиент Paystack API.

Используется эскроу для инициализации платежа и возврата средств.
Сетевые ошибки и ответы 5xx поднимаются как GatewayTransientError,
отказы 4xx как GatewayError.
"""

from __future__ import annotations

from typing import Any

import httpx

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.core.escrow.gateway import (
    GatewayAlreadyRefundedError,
    GatewayCheckout,
    GatewayError,
    GatewayTransientError,
)

# Ответы Paystack на возврат по уже возвращённому платежу
ALREADY_REFUNDED_MARKERS = ("fully reversed", "already been refunded", "already refunded")


class PaystackClient:
    """Асинхронный клиент Paystack."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self.callback_url = callback_url
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._secret_key)

    async def close(self) -> None:
        await self.client.aclose()

    async def _post(self, path: str, json: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(path, json=json)
        except httpx.TransportError as e:
            await log_error(f"Paystack {path}: сетевая ошибка {e!r}")
            raise GatewayTransientError(f"Paystack недоступен: {e!r}") from e

        if response.status_code >= 500:
            await log_error(f"Paystack {path}: HTTP {response.status_code}")
            raise GatewayTransientError(
                f"Paystack ответил {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayError(f"Paystack вернул не JSON: {response.text[:200]}", response.status_code) from e

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            await log_error(f"Paystack {path}: отказ ({message})")
            raise GatewayError(f"Paystack отклонил запрос: {message}", status_code=response.status_code)

        return body.get("data") or {}

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayCheckout:
        """
        POST /transaction/initialize.

        Args:
            email: Email покупателя
            amount_minor: Сумма в kobo
            reference: Референс эскроу
            currency: Валюта
            metadata: Дополнительные данные (escrow_id, order_id)
        """
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": currency,
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        data = await self._post("/transaction/initialize", payload)
        await log_info(f"Paystack: платёж {reference} инициализирован", type_msg=TypeMsg.INFO)
        return GatewayCheckout(
            reference=data.get("reference", reference),
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    async def refund(self, reference: str, amount_minor: int) -> dict[str, Any]:
        """
        POST /refund: возврат по референсу платежа.

        Отказ из-за того, что платёж уже возвращён, поднимается как
        GatewayAlreadyRefundedError.
        """
        try:
            data = await self._post("/refund", {"transaction": reference, "amount": amount_minor})
        except GatewayTransientError:
            raise
        except GatewayError as e:
            if any(marker in str(e).lower() for marker in ALREADY_REFUNDED_MARKERS):
                raise GatewayAlreadyRefundedError(str(e), status_code=e.status_code) from e
            raise
        await log_info(f"Paystack: возврат {amount_minor} по {reference} принят", type_msg=TypeMsg.INFO)
        return data
