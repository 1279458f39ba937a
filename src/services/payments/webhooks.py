# src/services/payments/webhooks.py
"""
Вебхуки Paystack.

Подпись x-paystack-signature: hex HMAC-SHA512 сырого тела запроса с
секретным ключом. Подпись проверяется до разбора JSON.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_warning
from src.core.escrow.exceptions import EscrowNotFoundError, InvalidTransitionError, PaymentIntegrityError
from src.core.escrow.service import EscrowService
from src.core.escrow.wallet import WalletService

SIGNATURE_HEADER = "x-paystack-signature"


class WebhookSignatureError(Exception):
    """Подпись отсутствует или не совпадает."""


class WebhookPayloadError(Exception):
    """Тело вебхука не разбирается."""


class WebhookEventKind(str, Enum):
    """События Paystack, которые обрабатывает сервис."""
    CHARGE_SUCCESS = "charge.success"
    CHARGE_FAILED = "charge.failed"
    TRANSFER_SUCCESS = "transfer.success"
    TRANSFER_FAILED = "transfer.failed"
    UNHANDLED = "unhandled"

    @classmethod
    def parse(cls, value: str) -> "WebhookEventKind":
        try:
            kind = cls(value)
        except ValueError:
            return cls.UNHANDLED
        return kind


class WebhookOutcome(str, Enum):
    """Итог обработки, уходит в ответ шлюзу."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


class WebhookCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None
    customer_code: str | None = None


class WebhookData(BaseModel):
    """Поле data события (лишние поля игнорируются)."""
    model_config = ConfigDict(extra="ignore")

    reference: str = Field(..., min_length=1)
    amount: int | None = Field(None, description="Сумма в kobo")
    status: str | None = None
    gateway_response: str | None = None
    reason: str | None = None
    customer: WebhookCustomer | None = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


def compute_signature(secret_key: str, body: bytes) -> str:
    return hmac.new(secret_key.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(secret_key: str, body: bytes, signature: str | None) -> None:
    """
    Raises:
        WebhookSignatureError: подпись отсутствует, секрет не задан или подпись неверна
    """
    if not signature:
        raise WebhookSignatureError("Отсутствует подпись вебхука")
    if not secret_key:
        raise WebhookSignatureError("Секретный ключ шлюза не настроен")
    if not hmac.compare_digest(compute_signature(secret_key, body), signature.strip().lower()):
        raise WebhookSignatureError("Неверная подпись вебхука")


def parse_envelope(body: bytes) -> WebhookEnvelope:
    try:
        return WebhookEnvelope.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        raise WebhookPayloadError(f"Некорректное тело вебхука: {e}") from e


def parse_data(envelope: WebhookEnvelope) -> WebhookData:
    try:
        return WebhookData.model_validate(envelope.data)
    except ValidationError as e:
        raise WebhookPayloadError(f"Некорректные данные события {envelope.event}: {e}") from e


class WebhookProcessor:
    """
    Проверяет подпись и направляет событие в эскроу или кошельки.

    Ошибки подписи и разбора поднимаются как WebhookSignatureError и
    WebhookPayloadError. Отклонённые по бизнес-правилам события не
    повторяются шлюзом (REJECTED), прочие ошибки пробрасываются.
    """

    def __init__(self, secret_key: str, escrow_service: EscrowService, wallet_service: WalletService) -> None:
        self._secret_key = secret_key
        self.escrow_service = escrow_service
        self.wallet_service = wallet_service

    async def process(self, body: bytes, signature: str | None) -> WebhookOutcome:
        verify_signature(self._secret_key, body, signature)
        envelope = parse_envelope(body)
        kind = WebhookEventKind.parse(envelope.event)

        match kind:
            case WebhookEventKind.CHARGE_SUCCESS:
                return await self._charge_success(parse_data(envelope))
            case WebhookEventKind.CHARGE_FAILED:
                return await self._charge_failed(parse_data(envelope))
            case WebhookEventKind.TRANSFER_SUCCESS:
                data = parse_data(envelope)
                done = await self.wallet_service.mark_payout_succeeded(data.reference)
                return WebhookOutcome.PROCESSED if done else WebhookOutcome.IGNORED
            case WebhookEventKind.TRANSFER_FAILED:
                data = parse_data(envelope)
                reversed_now = await self.wallet_service.reverse_failed_payout(
                    data.reference, data.reason or data.gateway_response
                )
                return WebhookOutcome.PROCESSED if reversed_now else WebhookOutcome.IGNORED
            case WebhookEventKind.UNHANDLED:
                await log_info(f"Необрабатываемое событие Paystack: {envelope.event}", type_msg=TypeMsg.DEBUG)
                return WebhookOutcome.IGNORED

    async def _charge_success(self, data: WebhookData) -> WebhookOutcome:
        try:
            result = await self.escrow_service.handle_charge_success(data.reference, data.amount)
        except EscrowNotFoundError:
            await log_warning(f"charge.success для неизвестного референса {data.reference}")
            return WebhookOutcome.IGNORED
        except PaymentIntegrityError:
            return WebhookOutcome.REJECTED
        except InvalidTransitionError as e:
            await log_warning(f"charge.success {data.reference} отклонён: {e}")
            return WebhookOutcome.REJECTED
        return WebhookOutcome.PROCESSED if result.applied else WebhookOutcome.DUPLICATE

    async def _charge_failed(self, data: WebhookData) -> WebhookOutcome:
        try:
            result = await self.escrow_service.handle_charge_failed(
                data.reference, data.gateway_response or data.reason
            )
        except EscrowNotFoundError:
            await log_warning(f"charge.failed для неизвестного референса {data.reference}")
            return WebhookOutcome.IGNORED
        except InvalidTransitionError as e:
            await log_warning(f"charge.failed {data.reference} отклонён: {e}")
            return WebhookOutcome.REJECTED
        return WebhookOutcome.PROCESSED if result.applied else WebhookOutcome.DUPLICATE
