# tests/common/test_constants.py
"""
Unit тесты для констант (src/common/constants.py).
"""

import pytest

from src.common.constants import (
    ADMIN_DASHBOARD_TOPIC,
    DisputeResolution,
    DisputeStatus,
    EscrowStatus,
    EscrowTrigger,
    TypeMsg,
    UserRole,
    WalletTransactionType,
    user_topic,
)


class TestTypeMsg:
    """Тесты для TypeMsg enum."""

    def test_type_msg_values(self) -> None:
        """Тест значений TypeMsg."""
        assert TypeMsg.DEBUG.value == "debug"
        assert TypeMsg.INFO.value == "info"
        assert TypeMsg.WARNING.value == "warning"
        assert TypeMsg.ERROR.value == "error"
        assert TypeMsg.CRITICAL.value == "critical"

    def test_type_msg_is_str_enum(self) -> None:
        """Тест что TypeMsg является строковым enum."""
        assert isinstance(TypeMsg.INFO, str)


class TestUserRole:
    """Тесты для UserRole enum."""

    def test_all_roles_exist(self) -> None:
        """Тест наличия всех ролей."""
        assert {r.value for r in UserRole} == {"ADMIN", "MERCHANT", "DRIVER", "CONSUMER", "GUEST"}

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("consumer", UserRole.CONSUMER),
            ("ADMIN", UserRole.ADMIN),
            ("Merchant", UserRole.MERCHANT),
            ("superuser", UserRole.GUEST),
            ("", UserRole.GUEST),
            (None, UserRole.GUEST),
        ],
    )
    def test_parse(self, raw, expected) -> None:
        assert UserRole.parse(raw) is expected

    def test_str(self) -> None:
        assert str(UserRole.DRIVER) == "DRIVER"


class TestEscrowStatus:
    """Тесты для EscrowStatus enum."""

    def test_values(self) -> None:
        assert [s.value for s in EscrowStatus] == ["PENDING", "PAID", "DISPUTED", "RELEASED", "FAILED"]

    def test_terminal_statuses(self) -> None:
        """Конечные статусы."""
        terminal = {s for s in EscrowStatus if s.is_terminal}
        assert terminal == {EscrowStatus.RELEASED, EscrowStatus.FAILED}


class TestOtherEnums:
    """Триггеры, споры и кошельки."""

    def test_triggers(self) -> None:
        assert EscrowTrigger.CHARGE_SUCCEEDED.value == "charge_succeeded"
        assert len(EscrowTrigger) == 7

    def test_dispute_enums(self) -> None:
        assert [s.value for s in DisputeStatus] == ["OPEN", "INVESTIGATING", "RESOLVED", "CLOSED"]
        assert {r.value for r in DisputeResolution} == {"RELEASE", "REFUND"}

    def test_wallet_transaction_types(self) -> None:
        assert WalletTransactionType.PAYOUT_REVERSAL.value == "PAYOUT_REVERSAL"


class TestTopics:
    """Топики уведомлений."""

    def test_topics(self) -> None:
        assert user_topic(42) == "user.42"
        assert ADMIN_DASHBOARD_TOPIC == "admin.dashboard"
