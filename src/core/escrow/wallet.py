# src/core/escrow/wallet.py
"""
Кошельки и журнал движений.

Запись журнала уникальна по (reference, type), поэтому повторное
зачисление по тому же эскроу ничего не меняет и повторы безопасны.
"""

from __future__ import annotations

from decimal import Decimal

from asyncpg import Record

from src.common.constants import TypeMsg, WalletTransactionStatus, WalletTransactionType
from src.common.logger import log_info, log_warning
from src.core.escrow.models import WalletBalance, WalletEntry
from src.infra.database import DatabaseManager


def _entry_from_record(row: Record) -> WalletEntry:
    return WalletEntry.model_validate(dict(row))


class WalletRepository:
    """Репозиторий кошельков (payments_schema.wallets, wallet_transactions)."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    async def get_balance(self, user_id: int) -> WalletBalance | None:
        row = await self.db.fetchrow(
            "SELECT user_id, balance, currency FROM payments_schema.wallets WHERE user_id = $1",
            user_id,
        )
        return WalletBalance.model_validate(dict(row)) if row else None

    async def get_entry(self, reference: str, tx_type: WalletTransactionType) -> WalletEntry | None:
        row = await self.db.fetchrow(
            """
            SELECT * FROM payments_schema.wallet_transactions
            WHERE reference = $1 AND type = $2
            """,
            reference,
            tx_type.value,
        )
        return _entry_from_record(row) if row else None

    async def apply_entry(self, entry: WalletEntry, currency: str, affects_balance: bool = True) -> bool:
        """
        Записывает движение и (если affects_balance) меняет баланс.

        Returns:
            False, если запись с таким (reference, type) уже есть
        """
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO payments_schema.wallets (user_id, balance, currency)
                VALUES ($1, 0, $2)
                ON CONFLICT (user_id) DO NOTHING
                """,
                entry.wallet_user_id,
                currency,
            )
            entry_id = await conn.fetchval(
                """
                INSERT INTO payments_schema.wallet_transactions
                    (wallet_user_id, amount, type, reference, status, description, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (reference, type) DO NOTHING
                RETURNING id
                """,
                entry.wallet_user_id,
                entry.amount,
                entry.type.value,
                entry.reference,
                entry.status.value,
                entry.description,
                entry.created_at,
            )
            if entry_id is None:
                return False
            if affects_balance:
                await conn.execute(
                    """
                    UPDATE payments_schema.wallets
                    SET balance = balance + $2, updated_at = NOW()
                    WHERE user_id = $1
                    """,
                    entry.wallet_user_id,
                    entry.amount,
                )
        return True

    async def set_entry_status(
        self,
        reference: str,
        tx_type: WalletTransactionType,
        status: WalletTransactionStatus,
    ) -> WalletEntry | None:
        row = await self.db.fetchrow(
            """
            UPDATE payments_schema.wallet_transactions
            SET status = $3, updated_at = NOW()
            WHERE reference = $1 AND type = $2
            RETURNING *
            """,
            reference,
            tx_type.value,
            status.value,
        )
        return _entry_from_record(row) if row else None


class WalletService:
    """
    Движения средств по кошелькам, связанные с эскроу.

    Ответственности:
    - Зачисление продавцу при выплате из эскроу
    - Возврат покупателю (в кошелёк или через шлюз)
    - Отслеживание выплат (transfer.success / transfer.failed)
    """

    def __init__(self, repository: WalletRepository, currency: str = "NGN") -> None:
        self.repository = repository
        self.currency = currency

    async def get_balance(self, user_id: int) -> WalletBalance:
        balance = await self.repository.get_balance(user_id)
        if balance is None:
            return WalletBalance(user_id=user_id, currency=self.currency)
        return balance

    async def credit_escrow_release(self, merchant_id: int, amount: Decimal, escrow_id: str) -> bool:
        """
        Зачисляет продавцу выплату из эскроу.

        Returns:
            True при новом зачислении, False если оно уже было
        """
        credited = await self.repository.apply_entry(
            WalletEntry(
                wallet_user_id=merchant_id,
                amount=amount,
                type=WalletTransactionType.ESCROW_RELEASE,
                reference=escrow_id,
                description=f"Выплата из эскроу {escrow_id}",
            ),
            currency=self.currency,
        )
        if credited:
            await log_info(
                f"Кошелёк {merchant_id}: +{amount} {self.currency} (эскроу {escrow_id})",
                type_msg=TypeMsg.INFO,
            )
        else:
            await log_info(f"Зачисление по эскроу {escrow_id} уже выполнено", type_msg=TypeMsg.DEBUG)
        return credited

    async def credit_refund(self, customer_id: int, amount: Decimal, escrow_id: str) -> bool:
        """Возврат покупателю на баланс кошелька."""
        return await self.repository.apply_entry(
            WalletEntry(
                wallet_user_id=customer_id,
                amount=amount,
                type=WalletTransactionType.ESCROW_REFUND,
                reference=escrow_id,
                description=f"Возврат по эскроу {escrow_id}",
            ),
            currency=self.currency,
        )

    async def begin_gateway_refund(self, customer_id: int, amount: Decimal, escrow_id: str) -> bool:
        """
        Отмечает возврат через шлюз как начатый (без изменения баланса).

        Returns:
            False, если возврат по эскроу уже успешно завершён
        """
        entry = await self.repository.get_entry(escrow_id, WalletTransactionType.ESCROW_REFUND)
        if entry is not None:
            return entry.status != WalletTransactionStatus.SUCCESS

        await self.repository.apply_entry(
            WalletEntry(
                wallet_user_id=customer_id,
                amount=amount,
                type=WalletTransactionType.ESCROW_REFUND,
                reference=escrow_id,
                status=WalletTransactionStatus.PENDING,
                description=f"Возврат через шлюз по эскроу {escrow_id}",
            ),
            currency=self.currency,
            affects_balance=False,
        )
        return True

    async def complete_gateway_refund(self, escrow_id: str) -> None:
        await self.repository.set_entry_status(
            escrow_id,
            WalletTransactionType.ESCROW_REFUND,
            WalletTransactionStatus.SUCCESS,
        )

    # =========================================================================
    # ВЫПЛАТЫ (transfer.*)
    # =========================================================================

    async def mark_payout_succeeded(self, transfer_reference: str) -> bool:
        """transfer.success: выплата дошла до получателя."""
        entry = await self.repository.set_entry_status(
            transfer_reference,
            WalletTransactionType.PAYOUT,
            WalletTransactionStatus.SUCCESS,
        )
        if entry is None:
            await log_warning(f"transfer.success для неизвестной выплаты {transfer_reference}")
            return False
        await log_info(f"Выплата {transfer_reference} подтверждена", type_msg=TypeMsg.INFO)
        return True

    async def reverse_failed_payout(self, transfer_reference: str, reason: str | None = None) -> bool:
        """
        transfer.failed: выплата не прошла, списание возвращается на баланс.

        Returns:
            True, если сторнирование выполнено сейчас
        """
        entry = await self.repository.get_entry(transfer_reference, WalletTransactionType.PAYOUT)
        if entry is None:
            await log_warning(f"transfer.failed для неизвестной выплаты {transfer_reference}")
            return False

        await self.repository.set_entry_status(
            transfer_reference,
            WalletTransactionType.PAYOUT,
            WalletTransactionStatus.FAILED,
        )
        # Выплата записана отрицательной суммой, сторно возвращает её модуль
        reversed_now = await self.repository.apply_entry(
            WalletEntry(
                wallet_user_id=entry.wallet_user_id,
                amount=abs(entry.amount),
                type=WalletTransactionType.PAYOUT_REVERSAL,
                reference=transfer_reference,
                description=f"Сторно выплаты {transfer_reference}: {reason or 'transfer.failed'}",
            ),
            currency=self.currency,
        )
        if reversed_now:
            await log_warning(
                f"Выплата {transfer_reference} не прошла, {abs(entry.amount)} возвращено на кошелёк {entry.wallet_user_id}"
            )
        return reversed_now
