# src/core/escrow/repository.py
"""
Репозиторий эскроу (PostgreSQL).
Схема: payments_schema
Таблицы: escrow_transactions, escrow_status_history, disputes, escrow_releases
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from asyncpg import Connection, Record

from src.common.constants import DisputeStatus, EscrowStatus, WalletTransactionStatus, WalletTransactionType
from src.core.escrow.models import Dispute, EscrowRelease, EscrowTransaction, StatusHistoryEntry
from src.infra.database import DatabaseManager

# Колонки, которые может менять переход статуса
ESCROW_MUTABLE_COLUMNS = frozenset({
    "status",
    "platform_fee",
    "escrow_release_date",
    "dispute_id",
    "failure_reason",
    "paid_at",
    "released_at",
})

DISPUTE_MUTABLE_COLUMNS = frozenset({
    "status",
    "resolution",
    "resolution_notes",
    "resolved_by",
    "resolved_at",
})


class _LostRace(Exception):
    """Статус изменился между чтением и CAS; откатывает транзакцию."""


def _escrow_from_record(row: Record) -> EscrowTransaction:
    return EscrowTransaction.model_validate(dict(row))


def _dispute_from_record(row: Record) -> Dispute:
    data = dict(row)
    if isinstance(data.get("evidence"), str):
        data["evidence"] = json.loads(data["evidence"])
    return Dispute.model_validate(data)


def _set_clause(changes: dict[str, Any], allowed: frozenset[str], first_param: int) -> tuple[str, list[Any]]:
    """SET col = $n, ... для разрешённых колонок."""
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Недопустимые колонки для обновления: {sorted(unknown)}")

    parts: list[str] = []
    values: list[Any] = []
    for offset, (column, value) in enumerate(changes.items()):
        parts.append(f"{column} = ${first_param + offset}")
        values.append(value.value if hasattr(value, "value") else value)
    return ", ".join(parts), values


class EscrowRepository:
    """Репозиторий эскроу-транзакций и споров."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    # =========================================================================
    # ЭСКРОУ
    # =========================================================================

    async def create(self, escrow: EscrowTransaction, history: StatusHistoryEntry) -> EscrowTransaction:
        """Создать эскроу и первую запись журнала."""
        query = """
            INSERT INTO payments_schema.escrow_transactions (
                id, order_id, customer_id, merchant_id, amount, currency, status,
                payment_reference, payment_method, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $10)
            RETURNING *
        """
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                query,
                escrow.id,
                escrow.order_id,
                escrow.customer_id,
                escrow.merchant_id,
                escrow.amount,
                escrow.currency,
                escrow.status.value,
                escrow.payment_reference,
                escrow.payment_method,
                escrow.created_at,
            )
            await self._insert_history(conn, history)
        return _escrow_from_record(row)

    async def get(self, escrow_id: UUID) -> EscrowTransaction | None:
        row = await self.db.fetchrow(
            "SELECT * FROM payments_schema.escrow_transactions WHERE id = $1",
            escrow_id,
        )
        return _escrow_from_record(row) if row else None

    async def get_by_reference(self, reference: str) -> EscrowTransaction | None:
        row = await self.db.fetchrow(
            "SELECT * FROM payments_schema.escrow_transactions WHERE payment_reference = $1",
            reference,
        )
        return _escrow_from_record(row) if row else None

    async def get_by_order(self, order_id: str) -> EscrowTransaction | None:
        """Последнее эскроу заказа."""
        row = await self.db.fetchrow(
            """
            SELECT * FROM payments_schema.escrow_transactions
            WHERE order_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            order_id,
        )
        return _escrow_from_record(row) if row else None

    async def list_for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[EscrowTransaction]:
        """Эскроу, где пользователь покупатель или продавец."""
        rows = await self.db.fetch(
            """
            SELECT * FROM payments_schema.escrow_transactions
            WHERE customer_id = $1 OR merchant_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [_escrow_from_record(r) for r in rows]

    async def compare_and_set(
        self,
        escrow_id: UUID,
        expected: EscrowStatus,
        changes: dict[str, Any],
        history: StatusHistoryEntry,
        dispute: Dispute | None = None,
    ) -> EscrowTransaction | None:
        """
        Применяет изменения, только если статус в БД всё ещё expected.

        В одной транзакции: UPDATE ... WHERE status = expected, запись
        журнала и (для спора) строка disputes.

        Returns:
            Обновлённое эскроу или None, если другой писатель успел раньше
        """
        set_sql, values = _set_clause(changes, ESCROW_MUTABLE_COLUMNS, first_param=3)
        query = f"""
            UPDATE payments_schema.escrow_transactions
            SET {set_sql}, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
        """
        try:
            async with self.db.transaction() as conn:
                if dispute is not None:
                    await self._insert_dispute(conn, dispute)
                row = await conn.fetchrow(query, escrow_id, expected.value, *values)
                if row is None:
                    # Откатывает и вставку спора
                    raise _LostRace()
                await self._insert_history(conn, history)
        except _LostRace:
            return None
        return _escrow_from_record(row)

    async def history(self, escrow_id: UUID) -> list[StatusHistoryEntry]:
        rows = await self.db.fetch(
            """
            SELECT escrow_id, from_status, to_status, trigger, actor_id, note, created_at
            FROM payments_schema.escrow_status_history
            WHERE escrow_id = $1
            ORDER BY created_at, id
            """,
            escrow_id,
        )
        return [StatusHistoryEntry.model_validate(dict(r)) for r in rows]

    async def due_for_release(self, now: datetime, limit: int = 100) -> list[EscrowTransaction]:
        """PAID-эскроу с истёкшим сроком удержания."""
        rows = await self.db.fetch(
            """
            SELECT * FROM payments_schema.escrow_transactions
            WHERE status = 'PAID' AND escrow_release_date IS NOT NULL AND escrow_release_date <= $1
            ORDER BY escrow_release_date
            LIMIT $2
            """,
            now,
            limit,
        )
        return [_escrow_from_record(r) for r in rows]

    async def released_without_credit(self, limit: int = 100) -> list[EscrowTransaction]:
        """RELEASED-эскроу без зачисления продавцу в журнале кошелька."""
        rows = await self.db.fetch(
            """
            SELECT e.* FROM payments_schema.escrow_transactions e
            WHERE e.status = 'RELEASED'
              AND NOT EXISTS (
                  SELECT 1 FROM payments_schema.wallet_transactions w
                  WHERE w.reference = e.id::text AND w.type = $1
              )
            ORDER BY e.released_at
            LIMIT $2
            """,
            WalletTransactionType.ESCROW_RELEASE.value,
            limit,
        )
        return [_escrow_from_record(r) for r in rows]

    async def failed_without_refund(self, limit: int = 100) -> list[EscrowTransaction]:
        """FAILED-эскроу со списанными средствами, но без успешного возврата."""
        rows = await self.db.fetch(
            """
            SELECT e.* FROM payments_schema.escrow_transactions e
            WHERE e.status = 'FAILED' AND e.paid_at IS NOT NULL
              AND NOT EXISTS (
                  SELECT 1 FROM payments_schema.wallet_transactions w
                  WHERE w.reference = e.id::text AND w.type = $1 AND w.status = $2
              )
            ORDER BY e.updated_at
            LIMIT $3
            """,
            WalletTransactionType.ESCROW_REFUND.value,
            WalletTransactionStatus.SUCCESS.value,
            limit,
        )
        return [_escrow_from_record(r) for r in rows]

    async def add_release(self, release: EscrowRelease) -> bool:
        """Аудит выплаты. False, если выплата по эскроу уже записана."""
        result = await self.db.fetchval(
            """
            INSERT INTO payments_schema.escrow_releases
                (transaction_id, release_type, released_by, amount, notes, released_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (transaction_id) DO NOTHING
            RETURNING id
            """,
            release.transaction_id,
            release.release_type.value,
            release.released_by,
            release.amount,
            release.notes,
            release.released_at,
        )
        return result is not None

    # =========================================================================
    # СПОРЫ
    # =========================================================================

    async def get_dispute(self, dispute_id: UUID) -> Dispute | None:
        row = await self.db.fetchrow(
            "SELECT * FROM payments_schema.disputes WHERE id = $1",
            dispute_id,
        )
        return _dispute_from_record(row) if row else None

    async def update_dispute(
        self,
        dispute_id: UUID,
        expected: tuple[DisputeStatus, ...],
        changes: dict[str, Any],
    ) -> Dispute | None:
        """Обновляет спор, если его статус входит в expected; иначе None."""
        set_sql, values = _set_clause(changes, DISPUTE_MUTABLE_COLUMNS, first_param=3)
        row = await self.db.fetchrow(
            f"""
            UPDATE payments_schema.disputes
            SET {set_sql}
            WHERE id = $1 AND status = ANY($2::varchar[])
            RETURNING *
            """,
            dispute_id,
            [s.value for s in expected],
            *values,
        )
        return _dispute_from_record(row) if row else None

    # =========================================================================
    # ВНУТРЕННИЕ
    # =========================================================================

    @staticmethod
    async def _insert_history(conn: Connection, entry: StatusHistoryEntry) -> None:
        await conn.execute(
            """
            INSERT INTO payments_schema.escrow_status_history
                (escrow_id, from_status, to_status, trigger, actor_id, note, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.escrow_id,
            entry.from_status.value if entry.from_status else None,
            entry.to_status.value,
            entry.trigger,
            entry.actor_id,
            entry.note,
            entry.created_at,
        )

    @staticmethod
    async def _insert_dispute(conn: Connection, dispute: Dispute) -> None:
        await conn.execute(
            """
            INSERT INTO payments_schema.disputes
                (id, transaction_id, filed_by, dispute_type, description, evidence, status, filed_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
            """,
            dispute.id,
            dispute.transaction_id,
            dispute.filed_by,
            dispute.dispute_type.value,
            dispute.description,
            json.dumps(dispute.evidence) if dispute.evidence is not None else None,
            dispute.status.value,
            dispute.filed_at,
        )
