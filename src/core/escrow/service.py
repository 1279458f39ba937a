# src/core/escrow/service.py
"""
Бизнес-логика эскроу.

Переходы одного эскроу сериализуются блокировкой по id внутри процесса и
CAS-обновлением статуса в БД между процессами. Проигранный CAS
перечитывает строку и оценивает триггер заново.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Awaitable, Callable, NoReturn, TypeVar
from uuid import UUID, uuid4

from src.common.constants import (
    ADMIN_DASHBOARD_TOPIC,
    DisputeResolution,
    DisputeStatus,
    EscrowStatus,
    EscrowTrigger,
    ReleaseType,
    TypeMsg,
    user_topic,
)
from src.common.locks import KeyedLock
from src.common.logger import log_critical, log_error, log_info, log_warning
from src.common.retry import retry_async
from src.core.escrow.exceptions import (
    DisputeNotFoundError,
    EscrowConcurrencyError,
    EscrowInconsistencyError,
    EscrowNotFoundError,
    EscrowPermissionError,
    EscrowValidationError,
    InvalidTransitionError,
    PaymentIntegrityError,
)
from src.core.escrow.gateway import (
    GatewayAlreadyRefundedError,
    GatewayCheckout,
    GatewayTransientError,
    PaymentGateway,
)
from src.core.escrow.models import (
    SYSTEM_ACTOR_ID,
    Dispute,
    EscrowRelease,
    EscrowTransaction,
    FileDisputeRequest,
    InitiatePaymentRequest,
    ResolveDisputeRequest,
    StatusHistoryEntry,
    TransitionResult,
    WalletBalance,
    platform_fee,
    to_minor_units,
    utc_now,
)
from src.core.escrow.repository import EscrowRepository
from src.core.escrow.state_machine import EscrowStateMachine, Verdict
from src.core.escrow.wallet import WalletService
from src.core.notifications.service import Notifier
from src.infra.database import CONNECTION_ERRORS
from src.infra.event_bus import EventTypes

if TYPE_CHECKING:
    from src.config.loader import EscrowSettings

T = TypeVar("T")

# Ошибки движения средств, после которых имеет смысл повторить
RETRYABLE_FUNDS_ERRORS: tuple[type[BaseException], ...] = CONNECTION_ERRORS + (GatewayTransientError,)

MAX_CAS_ATTEMPTS = 3

Guard = Callable[[EscrowTransaction], None]


@dataclass
class ReconcileReport:
    """Итог сверки."""
    credited: int = 0
    refunded: int = 0
    failed: int = 0


class EscrowService:
    """
    Сервис эскроу.

    Ответственности:
    - Создание эскроу под заказ и инициализация платежа в шлюзе
    - Переходы статусов по вебхукам шлюза, действиям покупателя и администратора
    - Выплата продавцу за вычетом комиссии, возврат покупателю
    - Споры
    - Автовыплата по истечении удержания и сверка
    """

    def __init__(
        self,
        repository: EscrowRepository,
        wallet: WalletService,
        notifier: Notifier,
        gateway: PaymentGateway | None = None,
        *,
        fee_percent: Decimal = Decimal("2.5"),
        hold_hours: int = 72,
        currency: str = "NGN",
        minor_units: int = 100,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        call_timeout: float | None = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.wallet = wallet
        self.notifier = notifier
        self.gateway = gateway
        self.machine = EscrowStateMachine()

        self.fee_percent = fee_percent
        self.hold_period = timedelta(hours=hold_hours)
        self.currency = currency
        self.minor_units = minor_units
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.call_timeout = call_timeout

        self._clock = clock
        self._locks = KeyedLock()

    @classmethod
    def from_settings(
        cls,
        repository: EscrowRepository,
        wallet: WalletService,
        notifier: Notifier,
        gateway: PaymentGateway | None,
        config: "EscrowSettings",
    ) -> "EscrowService":
        return cls(
            repository,
            wallet,
            notifier,
            gateway,
            fee_percent=config.PLATFORM_FEE_PERCENT,
            hold_hours=config.AUTO_RELEASE_HOURS,
            currency=config.CURRENCY,
            minor_units=config.AMOUNT_MINOR_UNITS,
            retry_attempts=config.FUNDS_RETRY_ATTEMPTS,
            retry_base_delay=config.FUNDS_RETRY_BASE_DELAY,
            call_timeout=config.FUNDS_CALL_TIMEOUT,
        )

    # =========================================================================
    # СОЗДАНИЕ И ЧТЕНИЕ
    # =========================================================================

    async def initiate_payment(
        self,
        request: InitiatePaymentRequest,
    ) -> tuple[EscrowTransaction, GatewayCheckout | None]:
        """
        Создать эскроу PENDING под заказ.

        Если шлюз настроен и известен email покупателя, инициализирует
        платёж в шлюзе и возвращает ссылку на оплату.
        """
        if request.customer_id == request.merchant_id:
            raise EscrowValidationError("Покупатель и продавец должны различаться")

        reference = request.payment_reference or self._new_reference()
        if await self.repository.get_by_reference(reference) is not None:
            raise EscrowValidationError(f"Референс платежа уже использован: {reference}")

        now = self._now()
        escrow = EscrowTransaction(
            order_id=request.order_id,
            customer_id=request.customer_id,
            merchant_id=request.merchant_id,
            amount=request.amount,
            currency=request.currency or self.currency,
            payment_reference=reference,
            payment_method=request.payment_method,
            created_at=now,
            updated_at=now,
        )
        history = StatusHistoryEntry(
            escrow_id=escrow.id,
            from_status=None,
            to_status=EscrowStatus.PENDING,
            trigger="initiated",
            actor_id=request.customer_id,
            created_at=now,
        )
        created = await self.repository.create(escrow, history)
        await log_info(
            f"Эскроу {created.id} создано: заказ {created.order_id}, {created.amount} {created.currency}",
            type_msg=TypeMsg.INFO,
        )

        checkout: GatewayCheckout | None = None
        if self.gateway is not None and self.gateway.is_configured and request.customer_email:
            checkout = await self.gateway.initialize_transaction(
                email=request.customer_email,
                amount_minor=to_minor_units(created.amount, self.minor_units),
                reference=created.payment_reference,
                currency=created.currency,
                metadata={"escrow_id": str(created.id), "order_id": created.order_id},
            )

        return created, checkout

    async def get_escrow(self, escrow_id: UUID) -> EscrowTransaction:
        return await self._require(escrow_id)

    async def get_by_reference(self, reference: str) -> EscrowTransaction:
        escrow = await self.repository.get_by_reference(reference)
        if escrow is None:
            raise EscrowNotFoundError(reference)
        return escrow

    async def get_by_order(self, order_id: str) -> EscrowTransaction:
        escrow = await self.repository.get_by_order(order_id)
        if escrow is None:
            raise EscrowNotFoundError(order_id)
        return escrow

    async def get_history(self, escrow_id: UUID) -> list[StatusHistoryEntry]:
        await self._require(escrow_id)
        return await self.repository.history(escrow_id)

    async def list_user_escrows(self, user_id: int, limit: int = 50, offset: int = 0) -> list[EscrowTransaction]:
        return await self.repository.list_for_user(user_id, limit=limit, offset=offset)

    async def get_dispute(self, dispute_id: UUID) -> Dispute:
        dispute = await self.repository.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(dispute_id)
        return dispute

    async def get_wallet_balance(self, user_id: int) -> WalletBalance:
        return await self.wallet.get_balance(user_id)

    # =========================================================================
    # ВЕБХУКИ ШЛЮЗА
    # =========================================================================

    async def handle_charge_success(self, reference: str, amount_minor: int | None = None) -> TransitionResult:
        """
        charge.success: PENDING -> PAID, запуск таймера удержания.

        Повтор (эскроу уже PAID, DISPUTED или RELEASED) ничего не меняет.
        Успех для FAILED и несовпадение суммы считаются нарушением целостности.
        """
        escrow = await self.get_by_reference(reference)

        def guard(current: EscrowTransaction) -> None:
            if current.status == EscrowStatus.FAILED:
                raise PaymentIntegrityError(current.id, "успешное списание для проваленной транзакции")
            expected = to_minor_units(current.amount, self.minor_units)
            if amount_minor is not None and amount_minor != expected:
                raise PaymentIntegrityError(
                    current.id, f"сумма шлюза {amount_minor} не совпадает с суммой эскроу {expected}"
                )

        try:
            result = await self._transition(
                escrow.id,
                EscrowTrigger.CHARGE_SUCCEEDED,
                note=f"gateway:{reference}",
                guard=guard,
            )
        except PaymentIntegrityError as e:
            await log_error(str(e))
            await self._alert_admins("payment_integrity", escrow, {"reason": e.reason, "reference": reference})
            raise

        if result.applied:
            await self._notify_parties(result.escrow, EventTypes.ESCROW_PAID, include_admin=True)
        return result

    async def handle_charge_failed(self, reference: str, reason: str | None = None) -> TransitionResult:
        """charge.failed: PENDING -> FAILED без движения средств."""
        escrow = await self.get_by_reference(reference)
        result = await self._transition(
            escrow.id,
            EscrowTrigger.CHARGE_FAILED,
            note=f"gateway:{reference}",
            changes={"failure_reason": reason or "Платёж отклонён шлюзом"},
        )
        if result.applied:
            await self._notify(user_topic(result.escrow.customer_id), self._payload(result.escrow, EventTypes.ESCROW_FAILED))
        return result

    # =========================================================================
    # ВЫПЛАТА
    # =========================================================================

    async def confirm_delivery(self, escrow_id: UUID, customer_id: int) -> TransitionResult:
        """Покупатель подтвердил доставку: PAID -> RELEASED."""
        escrow = await self._require(escrow_id)
        if escrow.customer_id != customer_id:
            raise EscrowPermissionError("Подтвердить доставку может только покупатель")
        return await self._release(
            escrow_id,
            EscrowTrigger.RELEASE,
            ReleaseType.CUSTOMER_CONFIRMATION,
            actor_id=customer_id,
            notes="Доставка подтверждена покупателем",
        )

    async def confirm_delivery_for_order(self, order_id: str, customer_id: int) -> TransitionResult:
        escrow = await self.get_by_order(order_id)
        return await self.confirm_delivery(escrow.id, customer_id)

    async def admin_release(self, escrow_id: UUID, admin_id: int, notes: str | None = None) -> TransitionResult:
        """Ручная выплата администратором."""
        return await self._release(
            escrow_id,
            EscrowTrigger.RELEASE,
            ReleaseType.MANUAL_ADMIN,
            actor_id=admin_id,
            notes=notes or "Выплата администратором",
        )

    async def auto_release(self, escrow_id: UUID) -> TransitionResult:
        """Автовыплата по истечении срока удержания."""
        now = self._now()

        def guard(current: EscrowTransaction) -> None:
            if current.status != EscrowStatus.PAID:
                return
            if current.escrow_release_date is None or current.escrow_release_date > now:
                raise EscrowValidationError(f"Срок удержания эскроу {current.id} не истёк")

        return await self._release(
            escrow_id,
            EscrowTrigger.RELEASE,
            ReleaseType.AUTOMATIC,
            actor_id=SYSTEM_ACTOR_ID,
            notes="Автоматическая выплата по истечении удержания",
            guard=guard,
        )

    async def release_due(self, limit: int = 100) -> int:
        """
        Выплачивает все PAID-эскроу с истёкшим удержанием.

        Сбой одного эскроу не останавливает пакет: неудавшиеся зачисления
        досылает reconcile.

        Returns:
            Количество выполненных выплат
        """
        released = 0
        failed = 0
        for escrow in await self.repository.due_for_release(self._now(), limit):
            try:
                result = await self.auto_release(escrow.id)
            except (InvalidTransitionError, EscrowValidationError) as e:
                # Статус успел смениться (спор, подтверждение, отмена)
                await log_info(f"Автовыплата {escrow.id} пропущена: {e}", type_msg=TypeMsg.DEBUG)
                continue
            except (EscrowInconsistencyError, EscrowConcurrencyError) as e:
                failed += 1
                await log_warning(f"Автовыплата {escrow.id} не выполнена: {e}")
                continue
            if result.applied:
                released += 1
        if failed:
            await log_warning(f"Автовыплата: выполнено {released}, с ошибкой {failed}")
        return released

    async def _release(
        self,
        escrow_id: UUID,
        trigger: EscrowTrigger,
        release_type: ReleaseType,
        *,
        actor_id: int,
        notes: str | None,
        guard: Guard | None = None,
    ) -> TransitionResult:
        result = await self._transition(escrow_id, trigger, actor_id=actor_id, note=notes, guard=guard)
        if result.applied:
            await self._settle_release(result.escrow, release_type, actor_id, notes)
            await self._notify_parties(
                result.escrow,
                EventTypes.ESCROW_RELEASED,
                include_admin=True,
                extra={"release_type": release_type.value},
            )
        return result

    # =========================================================================
    # СПОРЫ
    # =========================================================================

    async def file_dispute(self, escrow_id: UUID, filed_by: int, request: FileDisputeRequest) -> Dispute:
        """
        Открыть спор: PAID -> DISPUTED, таймер автовыплаты снимается.
        Повторная подача при уже открытом споре возвращает его.
        """
        escrow = await self._require(escrow_id)
        if not escrow.is_party(filed_by):
            raise EscrowPermissionError("Спор может открыть только покупатель или продавец")

        def make_dispute(current: EscrowTransaction) -> Dispute:
            return Dispute(
                transaction_id=current.id,
                filed_by=filed_by,
                dispute_type=request.dispute_type,
                description=request.description,
                evidence=request.evidence,
                filed_at=self._now(),
            )

        result = await self._transition(
            escrow_id,
            EscrowTrigger.DISPUTE,
            actor_id=filed_by,
            note=request.dispute_type.value,
            dispute_factory=make_dispute,
        )
        if result.escrow.dispute_id is None:
            raise DisputeNotFoundError(f"escrow:{escrow_id}")
        dispute = await self.get_dispute(result.escrow.dispute_id)

        if result.applied:
            await log_warning(f"Открыт спор {dispute.id} по эскроу {escrow_id} ({dispute.dispute_type.value})")
            await self._notify_parties(
                result.escrow,
                EventTypes.ESCROW_DISPUTED,
                include_admin=True,
                extra={"dispute_id": str(dispute.id), "dispute_type": dispute.dispute_type.value},
            )
        return dispute

    async def start_investigation(self, dispute_id: UUID, admin_id: int) -> Dispute:
        """OPEN -> INVESTIGATING. Повтор ничего не меняет."""
        dispute = await self.get_dispute(dispute_id)
        if dispute.status == DisputeStatus.INVESTIGATING:
            return dispute

        updated = await self.repository.update_dispute(
            dispute_id,
            (DisputeStatus.OPEN,),
            {"status": DisputeStatus.INVESTIGATING},
        )
        if updated is None:
            current = await self.get_dispute(dispute_id)
            if current.status == DisputeStatus.INVESTIGATING:
                return current
            raise InvalidTransitionError(current.status, "start_investigation")

        await log_info(f"Спор {dispute_id}: расследование начато администратором {admin_id}", type_msg=TypeMsg.INFO)
        await self._notify(ADMIN_DASHBOARD_TOPIC, {
            "type": "dispute.investigating",
            "dispute_id": str(dispute_id),
            "escrow_id": str(updated.transaction_id),
            "admin_id": admin_id,
        })
        return updated

    async def resolve_dispute(self, dispute_id: UUID, admin_id: int, request: ResolveDisputeRequest) -> Dispute:
        """
        Решение администратора.

        RELEASE: DISPUTED -> RELEASED, зачисление продавцу.
        REFUND: DISPUTED -> FAILED, возврат покупателю.
        Спор становится RESOLVED, а после движения средств CLOSED.
        Повторный вызов с тем же решением доводит незавершённое решение.
        """
        dispute = await self.get_dispute(dispute_id)
        if dispute.resolution is not None and dispute.resolution != request.resolution:
            raise InvalidTransitionError(dispute.status, f"resolve_{request.resolution.value.lower()}", "спор уже решён иначе")
        if dispute.status == DisputeStatus.CLOSED:
            return dispute

        if dispute.is_open:
            resolved = await self.repository.update_dispute(
                dispute_id,
                (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING),
                {
                    "status": DisputeStatus.RESOLVED,
                    "resolution": request.resolution,
                    "resolution_notes": request.notes,
                    "resolved_by": admin_id,
                    "resolved_at": self._now(),
                },
            )
            if resolved is None:
                # Параллельное решение: перечитываем и сверяем
                return await self.resolve_dispute(dispute_id, admin_id, request)
            dispute = resolved

        if request.resolution == DisputeResolution.RELEASE:
            result = await self._transition(
                dispute.transaction_id,
                EscrowTrigger.RESOLVE_RELEASE,
                actor_id=admin_id,
                note=request.notes,
            )
            await self._settle_release(result.escrow, ReleaseType.DISPUTE_RESOLUTION, admin_id, request.notes)
            event_type = EventTypes.ESCROW_RELEASED
        else:
            result = await self._transition(
                dispute.transaction_id,
                EscrowTrigger.RESOLVE_REFUND,
                actor_id=admin_id,
                note=request.notes,
                changes={"failure_reason": "Возврат по решению спора"},
            )
            await self._refund_customer(result.escrow, ReleaseType.DISPUTE_REFUND, admin_id, request.notes)
            event_type = EventTypes.ESCROW_FAILED

        closed = await self.repository.update_dispute(
            dispute_id,
            (DisputeStatus.RESOLVED,),
            {"status": DisputeStatus.CLOSED},
        )
        closed = closed or await self.get_dispute(dispute_id)
        await log_info(
            f"Спор {dispute_id} закрыт: {request.resolution.value} (администратор {admin_id})",
            type_msg=TypeMsg.INFO,
        )

        if result.applied:
            await self._notify_parties(
                result.escrow,
                event_type,
                include_admin=True,
                extra={"dispute_id": str(dispute_id), "resolution": request.resolution.value},
            )
        return closed

    # =========================================================================
    # ОТМЕНА
    # =========================================================================

    async def admin_cancel(self, escrow_id: UUID, admin_id: int, reason: str | None = None) -> TransitionResult:
        """
        Отмена администратором: PENDING/PAID/DISPUTED -> FAILED.
        Если средства уже списаны, они возвращаются покупателю.
        """
        reason = reason or "Отменено администратором"
        result = await self._transition(
            escrow_id,
            EscrowTrigger.CANCEL,
            actor_id=admin_id,
            note=reason,
            changes={"failure_reason": reason},
        )
        if not result.applied:
            return result

        if result.escrow.was_captured:
            await self._refund_customer(result.escrow, ReleaseType.ADMIN_CANCEL, admin_id, reason)

        if result.previous_status == EscrowStatus.DISPUTED and result.escrow.dispute_id is not None:
            await self.repository.update_dispute(
                result.escrow.dispute_id,
                (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING),
                {
                    "status": DisputeStatus.RESOLVED,
                    "resolution": DisputeResolution.REFUND,
                    "resolution_notes": reason,
                    "resolved_by": admin_id,
                    "resolved_at": self._now(),
                },
            )
            await self.repository.update_dispute(
                result.escrow.dispute_id,
                (DisputeStatus.RESOLVED,),
                {"status": DisputeStatus.CLOSED},
            )

        await self._notify_parties(result.escrow, EventTypes.ESCROW_FAILED, include_admin=True)
        return result

    # =========================================================================
    # СВЕРКА
    # =========================================================================

    async def reconcile(self, limit: int = 100) -> ReconcileReport:
        """
        Доводит движения средств, не выполненные после смены статуса:
        RELEASED без зачисления продавцу и FAILED со списанием без возврата.
        """
        report = ReconcileReport()

        for escrow in await self.repository.released_without_credit(limit):
            try:
                await self._settle_release(escrow, ReleaseType.AUTOMATIC, SYSTEM_ACTOR_ID, "Сверка: зачисление восстановлено")
                report.credited += 1
            except EscrowInconsistencyError:
                report.failed += 1

        for escrow in await self.repository.failed_without_refund(limit):
            release_type = ReleaseType.DISPUTE_REFUND if escrow.dispute_id else ReleaseType.ADMIN_CANCEL
            try:
                await self._refund_customer(escrow, release_type, SYSTEM_ACTOR_ID, "Сверка: возврат восстановлен")
                report.refunded += 1
            except EscrowInconsistencyError:
                report.failed += 1

        if report.credited or report.refunded or report.failed:
            await log_warning(
                f"Сверка эскроу: зачислено {report.credited}, возвращено {report.refunded}, ошибок {report.failed}"
            )
        return report

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    async def _transition(
        self,
        escrow_id: UUID,
        trigger: EscrowTrigger,
        *,
        actor_id: int | None = None,
        note: str | None = None,
        changes: dict[str, Any] | None = None,
        guard: Guard | None = None,
        dispute_factory: Callable[[EscrowTransaction], Dispute] | None = None,
    ) -> TransitionResult:
        async with self._locks.hold(str(escrow_id)):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                escrow = await self._require(escrow_id)
                if guard is not None:
                    guard(escrow)

                if self.machine.evaluate(escrow.status, trigger) is Verdict.DUPLICATE:
                    await log_info(
                        f"Эскроу {escrow_id}: {trigger.value} в статусе {escrow.status.value} уже применён",
                        type_msg=TypeMsg.DEBUG,
                    )
                    return TransitionResult(escrow=escrow, applied=False, previous_status=escrow.status)

                target = self.machine.next_status(escrow.status, trigger)
                dispute = dispute_factory(escrow) if dispute_factory is not None else None
                update = self._changes_for(escrow, target, dispute)
                update.update(changes or {})
                history = StatusHistoryEntry(
                    escrow_id=escrow.id,
                    from_status=escrow.status,
                    to_status=target,
                    trigger=trigger.value,
                    actor_id=actor_id,
                    note=note,
                    created_at=self._now(),
                )

                updated = await self.repository.compare_and_set(
                    escrow.id, escrow.status, update, history, dispute=dispute
                )
                if updated is not None:
                    await log_info(
                        f"Эскроу {escrow_id}: {escrow.status.value} -> {target.value} ({trigger.value})",
                        type_msg=TypeMsg.INFO,
                    )
                    return TransitionResult(escrow=updated, applied=True, previous_status=escrow.status)

                await log_info(
                    f"Эскроу {escrow_id}: статус изменён параллельно, попытка {attempt}/{MAX_CAS_ATTEMPTS}",
                    type_msg=TypeMsg.DEBUG,
                )

        raise EscrowConcurrencyError(f"Эскроу {escrow_id}: не удалось применить {trigger.value}")

    def _changes_for(
        self,
        escrow: EscrowTransaction,
        target: EscrowStatus,
        dispute: Dispute | None,
    ) -> dict[str, Any]:
        now = self._now()
        changes: dict[str, Any] = {"status": target}
        if target == EscrowStatus.PAID:
            changes["paid_at"] = now
            changes["escrow_release_date"] = now + self.hold_period
        elif target == EscrowStatus.RELEASED:
            changes["released_at"] = now
            changes["platform_fee"] = platform_fee(escrow.amount, self.fee_percent)
            changes["escrow_release_date"] = None
        elif target == EscrowStatus.DISPUTED:
            if dispute is None:
                raise EscrowValidationError("Для спора нужна запись спора")
            changes["dispute_id"] = dispute.id
            changes["escrow_release_date"] = None
        elif target == EscrowStatus.FAILED:
            changes["escrow_release_date"] = None
        return changes

    # =========================================================================
    # ДВИЖЕНИЕ СРЕДСТВ
    # =========================================================================

    async def _settle_release(
        self,
        escrow: EscrowTransaction,
        release_type: ReleaseType,
        actor_id: int | None,
        notes: str | None,
    ) -> None:
        """Зачисление продавцу amount - fee и аудит выплаты. Идемпотентно."""
        payout = escrow.merchant_payout

        async def settle() -> None:
            await self.wallet.credit_escrow_release(escrow.merchant_id, payout, str(escrow.id))
            await self.repository.add_release(EscrowRelease(
                transaction_id=escrow.id,
                release_type=release_type,
                released_by=actor_id if actor_id is not None else SYSTEM_ACTOR_ID,
                amount=payout,
                notes=notes,
                released_at=self._now(),
            ))

        try:
            await self._with_retry(settle)()
        except Exception as e:
            await self._raise_inconsistency(escrow, "credit_escrow_release", e)

    async def _refund_customer(
        self,
        escrow: EscrowTransaction,
        release_type: ReleaseType,
        actor_id: int | None,
        notes: str | None,
    ) -> None:
        """
        Возврат полной суммы покупателю: через шлюз, если он настроен,
        иначе на баланс кошелька. Идемпотентно.
        """
        reference = str(escrow.id)
        use_gateway = self.gateway is not None and self.gateway.is_configured

        async def refund() -> None:
            if use_gateway:
                if await self.wallet.begin_gateway_refund(escrow.customer_id, escrow.amount, reference):
                    try:
                        await self.gateway.refund(
                            escrow.payment_reference,
                            to_minor_units(escrow.amount, self.minor_units),
                        )
                    except GatewayAlreadyRefundedError as e:
                        # Прошлая попытка дошла до шлюза, но не отметила запись
                        await log_warning(f"Эскроу {escrow.id}: шлюз уже вернул платёж ({e})")
                    await self.wallet.complete_gateway_refund(reference)
            else:
                await self.wallet.credit_refund(escrow.customer_id, escrow.amount, reference)
            await self.repository.add_release(EscrowRelease(
                transaction_id=escrow.id,
                release_type=release_type,
                released_by=actor_id if actor_id is not None else SYSTEM_ACTOR_ID,
                amount=escrow.amount,
                notes=notes,
                released_at=self._now(),
            ))

        try:
            await self._with_retry(refund)()
        except Exception as e:
            await self._raise_inconsistency(escrow, "refund", e)

        await log_info(f"Эскроу {escrow.id}: {escrow.amount} возвращено покупателю {escrow.customer_id}", type_msg=TypeMsg.INFO)

    def _with_retry(self, func: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
        return retry_async(
            RETRYABLE_FUNDS_ERRORS,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            timeout=self.call_timeout,
        )(func)

    async def _raise_inconsistency(self, escrow: EscrowTransaction, operation: str, cause: BaseException) -> NoReturn:
        await log_critical(
            f"Эскроу {escrow.id} в статусе {escrow.status.value}, но {operation} не выполнено: {cause!r}",
            extra={"escrow_id": str(escrow.id), "operation": operation},
        )
        await self._alert_admins("escrow_inconsistency", escrow, {"operation": operation, "error": repr(cause)})
        raise EscrowInconsistencyError(escrow.id, operation, cause) from cause

    # =========================================================================
    # УВЕДОМЛЕНИЯ
    # =========================================================================

    def _payload(self, escrow: EscrowTransaction, event_type: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": event_type,
            "escrow_id": str(escrow.id),
            "order_id": escrow.order_id,
            "status": escrow.status.value,
            "amount": str(escrow.amount),
            "currency": escrow.currency,
        }
        if escrow.escrow_release_date is not None:
            payload["escrow_release_date"] = escrow.escrow_release_date.isoformat()
        if extra:
            payload.update(extra)
        return payload

    async def _notify(self, topic: str, payload: dict[str, Any]) -> None:
        """Уведомление не должно мешать переходу: ошибки только в лог."""
        try:
            await self.notifier.publish(topic, payload)
        except Exception as e:
            await log_error(f"Не удалось отправить уведомление в {topic}: {e}")

    async def _notify_parties(
        self,
        escrow: EscrowTransaction,
        event_type: str,
        *,
        include_admin: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> None:
        payload = self._payload(escrow, event_type, extra)
        await self._notify(user_topic(escrow.customer_id), payload)
        await self._notify(user_topic(escrow.merchant_id), payload)
        if include_admin:
            await self._notify(ADMIN_DASHBOARD_TOPIC, payload)

    async def _alert_admins(self, alert: str, escrow: EscrowTransaction, details: dict[str, Any]) -> None:
        await self._notify(ADMIN_DASHBOARD_TOPIC, self._payload(escrow, f"alert.{alert}", details))

    # =========================================================================
    # ВНУТРЕННИЕ
    # =========================================================================

    async def _require(self, escrow_id: UUID) -> EscrowTransaction:
        escrow = await self.repository.get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _new_reference() -> str:
        return f"BP-ESC-{uuid4().hex[:20].upper()}"
