# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей платформы."""
    ADMIN = "ADMIN"
    MERCHANT = "MERCHANT"
    DRIVER = "DRIVER"
    CONSUMER = "CONSUMER"
    GUEST = "GUEST"  # неаутентифицированный запрос

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str | None) -> "UserRole":
        """Приводит произвольную строку к роли; неизвестные роли считаются GUEST."""
        if not value:
            return cls.GUEST
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.GUEST


class EscrowStatus(str, Enum):
    """Статусы эскроу-транзакции."""
    PENDING = "PENDING"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    RELEASED = "RELEASED"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Конечный ли статус."""
        return self in (EscrowStatus.RELEASED, EscrowStatus.FAILED)


class EscrowTrigger(str, Enum):
    """События, переводящие эскроу между статусами."""
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    RELEASE = "release"
    DISPUTE = "dispute"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"
    CANCEL = "cancel"

    def __str__(self) -> str:
        return self.value


class ReleaseType(str, Enum):
    """Основание движения средств из эскроу."""
    AUTOMATIC = "automatic"
    CUSTOMER_CONFIRMATION = "customer_confirmation"
    MANUAL_ADMIN = "manual_admin"
    DISPUTE_RESOLUTION = "dispute_resolution"
    DISPUTE_REFUND = "dispute_refund"
    ADMIN_CANCEL = "admin_cancel"

    def __str__(self) -> str:
        return self.value


class DisputeType(str, Enum):
    """Типы споров."""
    NON_DELIVERY = "non_delivery"
    WRONG_ITEM = "wrong_item"
    DAMAGED_GOODS = "damaged_goods"
    SERVICE_ISSUE = "service_issue"

    def __str__(self) -> str:
        return self.value


class DisputeStatus(str, Enum):
    """Статусы спора."""
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    def __str__(self) -> str:
        return self.value


class DisputeResolution(str, Enum):
    """Решение администратора по спору."""
    RELEASE = "RELEASE"  # в пользу продавца
    REFUND = "REFUND"  # в пользу покупателя

    def __str__(self) -> str:
        return self.value


class WalletTransactionType(str, Enum):
    """Типы записей в журнале кошелька."""
    ESCROW_RELEASE = "ESCROW_RELEASE"
    ESCROW_REFUND = "ESCROW_REFUND"
    PAYOUT = "PAYOUT"
    PAYOUT_REVERSAL = "PAYOUT_REVERSAL"

    def __str__(self) -> str:
        return self.value


class WalletTransactionStatus(str, Enum):
    """Статус записи журнала кошелька."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


# Топики уведомлений
ADMIN_DASHBOARD_TOPIC = "admin.dashboard"


def user_topic(user_id: int) -> str:
    """Персональный топик пользователя."""
    return f"user.{user_id}"
