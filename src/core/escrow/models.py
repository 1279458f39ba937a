# src/core/escrow/models.py
"""
Модели данных эскроу, споров и кошельков.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from src.common.constants import (
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    EscrowStatus,
    ReleaseType,
    WalletTransactionStatus,
    WalletTransactionType,
)

CENT = Decimal("0.01")
SYSTEM_ACTOR_ID = 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    """Округление денежной суммы до копеек."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, factor: int = 100) -> int:
    """Сумма в минимальных единицах (kobo для NGN)."""
    return int((amount * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, factor: int = 100) -> Decimal:
    return quantize_money(Decimal(amount_minor) / factor)


def platform_fee(amount: Decimal, fee_percent: Decimal) -> Decimal:
    """Комиссия платформы с суммы эскроу."""
    return quantize_money(amount * fee_percent / Decimal(100))


class EscrowTransaction(BaseModel):
    """Средства, удерживаемые по заказу."""

    id: UUID = Field(default_factory=uuid4, description="UUID эскроу")
    order_id: str = Field(..., min_length=1, description="ID заказа")
    customer_id: int = Field(..., description="ID покупателя")
    merchant_id: int = Field(..., description="ID продавца")
    amount: Decimal = Field(..., gt=0, description="Удерживаемая сумма")
    platform_fee: Optional[Decimal] = Field(None, description="Комиссия, фиксируется при выплате")
    currency: str = Field("NGN", description="Валюта")
    status: EscrowStatus = Field(EscrowStatus.PENDING, description="Статус")
    payment_reference: str = Field(..., description="Референс платежа в шлюзе")
    payment_method: str = Field("card", description="Способ оплаты")
    escrow_release_date: Optional[datetime] = Field(None, description="Когда сработает автовыплата")
    dispute_id: Optional[UUID] = Field(None, description="Открытый спор")
    failure_reason: Optional[str] = Field(None, description="Причина провала")

    created_at: datetime = Field(default_factory=utc_now)
    paid_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True

    @field_validator("amount")
    @classmethod
    def round_amount(cls, v: Decimal) -> Decimal:
        # gt=0 проверяется до округления: 0.004 превратилось бы в 0.00
        rounded = quantize_money(v)
        if rounded <= 0:
            raise ValueError("Сумма после округления до копеек должна быть больше нуля")
        return rounded

    @field_validator("platform_fee")
    @classmethod
    def round_fee(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return quantize_money(v) if v is not None else None

    @property
    def merchant_payout(self) -> Decimal:
        """Сумма к зачислению продавцу (после комиссии)."""
        return self.amount - (self.platform_fee or Decimal("0"))

    @property
    def was_captured(self) -> bool:
        """Были ли средства фактически списаны с покупателя."""
        return self.paid_at is not None

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.customer_id, self.merchant_id)


class StatusHistoryEntry(BaseModel):
    """Запись журнала переходов."""

    escrow_id: UUID
    from_status: Optional[EscrowStatus] = None
    to_status: EscrowStatus
    trigger: str
    actor_id: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True


class Dispute(BaseModel):
    """Спор по эскроу-транзакции."""

    id: UUID = Field(default_factory=uuid4)
    transaction_id: UUID
    filed_by: int
    dispute_type: DisputeType
    description: str = Field(..., min_length=1)
    evidence: Optional[dict[str, Any]] = None
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: Optional[DisputeResolution] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[int] = None
    filed_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_open(self) -> bool:
        return self.status in (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class EscrowRelease(BaseModel):
    """Движение средств из эскроу (аудит)."""

    transaction_id: UUID
    release_type: ReleaseType
    released_by: int = SYSTEM_ACTOR_ID
    amount: Decimal
    notes: Optional[str] = None
    released_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True


class WalletEntry(BaseModel):
    """Запись журнала кошелька."""

    wallet_user_id: int
    amount: Decimal
    type: WalletTransactionType
    reference: str
    status: WalletTransactionStatus = WalletTransactionStatus.SUCCESS
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True


class WalletBalance(BaseModel):
    """Баланс кошелька."""

    user_id: int
    balance: Decimal = Decimal("0.00")
    currency: str = "NGN"


class TransitionResult(BaseModel):
    """Итог обработки триггера."""

    escrow: EscrowTransaction
    applied: bool = Field(..., description="False, если триггер оказался повтором")
    previous_status: Optional[EscrowStatus] = None


# =============================================================================
# DTO ЗАПРОСОВ
# =============================================================================

class InitiatePaymentRequest(BaseModel):
    """Создание эскроу под заказ."""

    order_id: str = Field(..., min_length=1)
    customer_id: int
    merchant_id: int
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: Optional[str] = None
    payment_method: str = "card"
    payment_reference: Optional[str] = None
    customer_email: Optional[str] = None


class FileDisputeRequest(BaseModel):
    """Открытие спора."""

    dispute_type: DisputeType
    description: str = Field(..., min_length=1, max_length=2000)
    evidence: Optional[dict[str, Any]] = None


class ResolveDisputeRequest(BaseModel):
    """Решение администратора по спору."""

    resolution: DisputeResolution
    notes: Optional[str] = None
