# src/core/escrow/exceptions.py
"""
Исключения эскроу-домена.
HTTP-слой переводит их в коды ответа, воркеры в записи лога.
"""

from __future__ import annotations

from uuid import UUID


class EscrowError(Exception):
    """Базовое исключение эскроу."""


class EscrowNotFoundError(EscrowError):
    """Эскроу-транзакция не найдена."""

    def __init__(self, lookup: str | UUID) -> None:
        self.lookup = str(lookup)
        super().__init__(f"Эскроу не найдено: {self.lookup}")


class DisputeNotFoundError(EscrowError):
    """Спор не найден."""

    def __init__(self, dispute_id: str | UUID) -> None:
        self.dispute_id = str(dispute_id)
        super().__init__(f"Спор не найден: {self.dispute_id}")


class InvalidTransitionError(EscrowError):
    """Переход недопустим из текущего статуса."""

    def __init__(self, current: str, trigger: str, detail: str | None = None) -> None:
        self.current = str(current)
        self.trigger = str(trigger)
        message = f"Переход {self.trigger} недопустим из статуса {self.current}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class EscrowConcurrencyError(EscrowError):
    """Не удалось применить переход из-за параллельных изменений."""


class EscrowPermissionError(EscrowError):
    """Действие не разрешено этому пользователю."""


class EscrowValidationError(EscrowError):
    """Некорректные входные данные."""


class PaymentIntegrityError(EscrowError):
    """
    Нарушение целостности платежа: сумма не совпадает или успешное
    списание пришло для уже проваленной транзакции. Статус не меняется.
    """

    def __init__(self, escrow_id: UUID | str, reason: str) -> None:
        self.escrow_id = str(escrow_id)
        self.reason = reason
        super().__init__(f"Нарушение целостности платежа {self.escrow_id}: {reason}")


class EscrowInconsistencyError(EscrowError):
    """
    Статус эскроу уже изменён, но движение средств не выполнено
    после всех повторов. Требует ручного вмешательства.
    """

    def __init__(self, escrow_id: UUID | str, operation: str, cause: BaseException | None = None) -> None:
        self.escrow_id = str(escrow_id)
        self.operation = operation
        message = f"Эскроу {self.escrow_id}: операция {operation} не выполнена"
        if cause is not None:
            message = f"{message} ({cause!r})"
        super().__init__(message)
