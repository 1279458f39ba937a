# src/core/escrow/state_machine.py
"""
Таблица переходов эскроу.

PENDING -> PAID -> (RELEASED | DISPUTED), DISPUTED -> RELEASED,
любой неконечный статус -> FAILED. RELEASED и FAILED конечные.
"""

from __future__ import annotations

from enum import Enum

from src.common.constants import EscrowStatus, EscrowTrigger
from src.core.escrow.exceptions import InvalidTransitionError


class Verdict(str, Enum):
    """Что делать с триггером в текущем статусе."""
    APPLY = "apply"
    DUPLICATE = "duplicate"


class EscrowStateMachine:
    ALLOWED_TRANSITIONS: dict[EscrowStatus, dict[EscrowTrigger, EscrowStatus]] = {
        EscrowStatus.PENDING: {
            EscrowTrigger.CHARGE_SUCCEEDED: EscrowStatus.PAID,
            EscrowTrigger.CHARGE_FAILED: EscrowStatus.FAILED,
            EscrowTrigger.CANCEL: EscrowStatus.FAILED,
        },
        EscrowStatus.PAID: {
            EscrowTrigger.RELEASE: EscrowStatus.RELEASED,
            EscrowTrigger.DISPUTE: EscrowStatus.DISPUTED,
            EscrowTrigger.CANCEL: EscrowStatus.FAILED,
        },
        EscrowStatus.DISPUTED: {
            EscrowTrigger.RESOLVE_RELEASE: EscrowStatus.RELEASED,
            EscrowTrigger.RESOLVE_REFUND: EscrowStatus.FAILED,
            EscrowTrigger.CANCEL: EscrowStatus.FAILED,
        },
        EscrowStatus.RELEASED: {},
        EscrowStatus.FAILED: {},
    }

    # Статусы, в которых триггер уже считается применённым (повтор ничего не меняет)
    ALREADY_APPLIED: dict[EscrowTrigger, frozenset[EscrowStatus]] = {
        EscrowTrigger.CHARGE_SUCCEEDED: frozenset({
            EscrowStatus.PAID, EscrowStatus.DISPUTED, EscrowStatus.RELEASED,
        }),
        EscrowTrigger.CHARGE_FAILED: frozenset({EscrowStatus.FAILED}),
        EscrowTrigger.RELEASE: frozenset({EscrowStatus.RELEASED}),
        EscrowTrigger.DISPUTE: frozenset({EscrowStatus.DISPUTED}),
        EscrowTrigger.RESOLVE_RELEASE: frozenset({EscrowStatus.RELEASED}),
        EscrowTrigger.RESOLVE_REFUND: frozenset({EscrowStatus.FAILED}),
        EscrowTrigger.CANCEL: frozenset({EscrowStatus.FAILED}),
    }

    @classmethod
    def can_transition(cls, current: EscrowStatus, trigger: EscrowTrigger) -> bool:
        return trigger in cls.ALLOWED_TRANSITIONS.get(current, {})

    @classmethod
    def is_duplicate(cls, current: EscrowStatus, trigger: EscrowTrigger) -> bool:
        return current in cls.ALREADY_APPLIED.get(trigger, frozenset())

    @classmethod
    def next_status(cls, current: EscrowStatus, trigger: EscrowTrigger) -> EscrowStatus:
        """Целевой статус; InvalidTransitionError, если перехода нет."""
        target = cls.ALLOWED_TRANSITIONS.get(current, {}).get(trigger)
        if target is None:
            raise InvalidTransitionError(current, trigger)
        return target

    @classmethod
    def evaluate(cls, current: EscrowStatus, trigger: EscrowTrigger) -> Verdict:
        """
        Решает судьбу триггера.

        Повтор уже применённого триггера даёт DUPLICATE, допустимый переход
        даёт APPLY. Всё остальное (в том числе любой иной триггер в конечном
        статусе) поднимает InvalidTransitionError.
        """
        if cls.can_transition(current, trigger):
            return Verdict.APPLY
        if cls.is_duplicate(current, trigger):
            return Verdict.DUPLICATE
        detail = "статус конечный" if current.is_terminal else None
        raise InvalidTransitionError(current, trigger, detail)
