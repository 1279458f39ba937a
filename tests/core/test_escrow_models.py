# tests/core/test_escrow_models.py
"""
Тесты моделей и денежных функций эскроу.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.core.escrow.models import (
    EscrowTransaction,
    InitiatePaymentRequest,
    from_minor_units,
    platform_fee,
    quantize_money,
    to_minor_units,
)


class TestMoney:
    """Округление и комиссия."""

    def test_fee_on_15000(self) -> None:
        assert platform_fee(Decimal("15000"), Decimal("2.5")) == Decimal("375.00")

    def test_fee_rounds_half_up(self) -> None:
        # 2.5% от 0.30 = 0.0075 -> 0.01
        assert platform_fee(Decimal("0.30"), Decimal("2.5")) == Decimal("0.01")

    def test_quantize(self) -> None:
        assert quantize_money(Decimal("10.005")) == Decimal("10.01")

    def test_minor_units(self) -> None:
        assert to_minor_units(Decimal("15000.00")) == 1500000
        assert to_minor_units(Decimal("0.01")) == 1
        assert from_minor_units(1500000) == Decimal("15000.00")


class TestEscrowTransaction:
    """Модель эскроу."""

    def test_amount_quantized(self) -> None:
        escrow = EscrowTransaction(
            order_id="o", customer_id=1, merchant_id=2, amount=Decimal("99.999"), payment_reference="r"
        )
        assert escrow.amount == Decimal("100.00")

    def test_amount_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            EscrowTransaction(order_id="o", customer_id=1, merchant_id=2, amount=Decimal("0"), payment_reference="r")

    def test_amount_rounding_to_zero_rejected(self) -> None:
        """Сумма меньше копейки не превращается в нулевое эскроу."""
        with pytest.raises(ValidationError):
            EscrowTransaction(
                order_id="o", customer_id=1, merchant_id=2, amount=Decimal("0.004"), payment_reference="r"
            )

    def test_merchant_payout(self) -> None:
        escrow = EscrowTransaction(
            order_id="o",
            customer_id=1,
            merchant_id=2,
            amount=Decimal("15000"),
            platform_fee=Decimal("375"),
            payment_reference="r",
        )
        assert escrow.merchant_payout == Decimal("14625.00")
        assert escrow.is_party(1) and escrow.is_party(2)
        assert not escrow.is_party(3)
        assert not escrow.was_captured


class TestInitiatePaymentRequest:
    """Запрос на создание эскроу."""

    def test_sub_kobo_amount_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InitiatePaymentRequest(order_id="o", customer_id=1, merchant_id=2, amount=Decimal("0.004"))

    def test_more_than_two_decimals_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InitiatePaymentRequest(order_id="o", customer_id=1, merchant_id=2, amount=Decimal("10.005"))

    def test_kobo_precision_accepted(self) -> None:
        request = InitiatePaymentRequest(order_id="o", customer_id=1, merchant_id=2, amount=Decimal("0.01"))
        assert request.amount == Decimal("0.01")
