# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "")

from src.common.constants import DisputeStatus, EscrowStatus, WalletTransactionStatus, WalletTransactionType
from src.core.escrow.gateway import GatewayCheckout
from src.core.escrow.models import (
    Dispute,
    EscrowRelease,
    EscrowTransaction,
    StatusHistoryEntry,
    WalletBalance,
    WalletEntry,
)
from src.core.escrow.service import EscrowService
from src.core.escrow.wallet import WalletService


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "PROJECT_NAME": "brillprime_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "api",
        "API_PORT": 9000,
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "colored",
        "LOG_TO_FILE": False,
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "brillprime_test",
        "DB_USER": "postgres",
        "DB_PASSWORD": "test_password",
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_NAMESPACE": "bp_test",
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_EXCHANGE": "brillprime.test",
        "RATE_LIMIT_BACKEND": "memory",
        "RATE_LIMIT_ROLE_LIMITS": {
            "CONSUMER": {"max_requests": 5, "window_seconds": 60},
            "ADMIN": {"max_requests": 50, "window_seconds": 60},
        },
        "RATE_LIMIT_ENDPOINT_LIMITS": {
            "/api/v1/escrow": {"max_requests": 3, "window_seconds": 60},
        },
        "PLATFORM_FEE_PERCENT": 2.5,
        "AUTO_RELEASE_HOURS": 72,
        "CURRENCY": "NGN",
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.is_connected = True
    redis.incr_window = AsyncMock(return_value=(1, 60000))
    redis.delete = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФЕЙКИ ДОМЕНА
# =============================================================================

class FakeClock:
    """Управляемые часы."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeWalletRepository:
    """Кошельки в памяти с той же уникальностью (reference, type), что и в БД."""

    def __init__(self) -> None:
        self.entries: dict[tuple[str, WalletTransactionType], WalletEntry] = {}
        self.balances: dict[int, Decimal] = {}
        self.failures: list[BaseException] = []
        # Отдельно для смены статуса записи (завершение возврата через шлюз)
        self.status_failures: list[BaseException] = []

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def get_balance(self, user_id: int) -> WalletBalance | None:
        if user_id not in self.balances:
            return None
        return WalletBalance(user_id=user_id, balance=self.balances[user_id], currency="NGN")

    async def get_entry(self, reference: str, tx_type: WalletTransactionType) -> WalletEntry | None:
        return self.entries.get((reference, tx_type))

    async def apply_entry(self, entry: WalletEntry, currency: str, affects_balance: bool = True) -> bool:
        self._maybe_fail()
        self.balances.setdefault(entry.wallet_user_id, Decimal("0.00"))
        key = (entry.reference, entry.type)
        if key in self.entries:
            return False
        self.entries[key] = entry
        if affects_balance:
            self.balances[entry.wallet_user_id] += entry.amount
        return True

    async def set_entry_status(
        self,
        reference: str,
        tx_type: WalletTransactionType,
        status: WalletTransactionStatus,
    ) -> WalletEntry | None:
        if self.status_failures:
            raise self.status_failures.pop(0)
        entry = self.entries.get((reference, tx_type))
        if entry is None:
            return None
        updated = entry.model_copy(update={"status": status})
        self.entries[(reference, tx_type)] = updated
        return updated

    def entries_of(self, tx_type: WalletTransactionType) -> list[WalletEntry]:
        return [e for (_, t), e in self.entries.items() if t == tx_type]


class FakeEscrowRepository:
    """
    Эскроу в памяти. CAS сравнивает статус так же, как UPDATE ... WHERE status.

    before_cas вызывается один раз перед следующим CAS и позволяет
    смоделировать параллельного писателя.
    interleave отдаёт управление циклу событий на чтении и CAS, как
    это делает настоящий драйвер.
    """

    def __init__(self, wallets: FakeWalletRepository) -> None:
        self.wallets = wallets
        self.escrows: dict[UUID, EscrowTransaction] = {}
        self.disputes: dict[UUID, Dispute] = {}
        self.history_entries: list[StatusHistoryEntry] = []
        self.releases: dict[UUID, EscrowRelease] = {}
        self.before_cas: Callable[[], None] | None = None
        self.cas_calls = 0
        self.interleave = False

    async def _io(self) -> None:
        if self.interleave:
            await asyncio.sleep(0)

    async def create(self, escrow: EscrowTransaction, history: StatusHistoryEntry) -> EscrowTransaction:
        self.escrows[escrow.id] = escrow
        self.history_entries.append(history)
        return escrow

    async def get(self, escrow_id: UUID) -> EscrowTransaction | None:
        await self._io()
        return self.escrows.get(escrow_id)

    async def get_by_reference(self, reference: str) -> EscrowTransaction | None:
        return next((e for e in self.escrows.values() if e.payment_reference == reference), None)

    async def get_by_order(self, order_id: str) -> EscrowTransaction | None:
        matches = [e for e in self.escrows.values() if e.order_id == order_id]
        return max(matches, key=lambda e: e.created_at) if matches else None

    async def list_for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[EscrowTransaction]:
        matches = [e for e in self.escrows.values() if e.is_party(user_id)]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[offset:offset + limit]

    async def compare_and_set(
        self,
        escrow_id: UUID,
        expected: EscrowStatus,
        changes: dict[str, Any],
        history: StatusHistoryEntry,
        dispute: Dispute | None = None,
    ) -> EscrowTransaction | None:
        self.cas_calls += 1
        await self._io()
        if self.before_cas is not None:
            hook, self.before_cas = self.before_cas, None
            hook()

        current = self.escrows[escrow_id]
        if current.status != expected:
            return None
        if dispute is not None:
            self.disputes[dispute.id] = dispute
        updated = current.model_copy(update=changes)
        self.escrows[escrow_id] = updated
        self.history_entries.append(history)
        return updated

    async def history(self, escrow_id: UUID) -> list[StatusHistoryEntry]:
        return [h for h in self.history_entries if h.escrow_id == escrow_id]

    async def due_for_release(self, now: datetime, limit: int = 100) -> list[EscrowTransaction]:
        due = [
            e for e in self.escrows.values()
            if e.status == EscrowStatus.PAID and e.escrow_release_date is not None and e.escrow_release_date <= now
        ]
        return sorted(due, key=lambda e: e.escrow_release_date)[:limit]

    async def released_without_credit(self, limit: int = 100) -> list[EscrowTransaction]:
        return [
            e for e in self.escrows.values()
            if e.status == EscrowStatus.RELEASED
            and (str(e.id), WalletTransactionType.ESCROW_RELEASE) not in self.wallets.entries
        ][:limit]

    async def failed_without_refund(self, limit: int = 100) -> list[EscrowTransaction]:
        result = []
        for e in self.escrows.values():
            if e.status != EscrowStatus.FAILED or e.paid_at is None:
                continue
            refund = self.wallets.entries.get((str(e.id), WalletTransactionType.ESCROW_REFUND))
            if refund is None or refund.status != WalletTransactionStatus.SUCCESS:
                result.append(e)
        return result[:limit]

    async def add_release(self, release: EscrowRelease) -> bool:
        if release.transaction_id in self.releases:
            return False
        self.releases[release.transaction_id] = release
        return True

    async def get_dispute(self, dispute_id: UUID) -> Dispute | None:
        return self.disputes.get(dispute_id)

    async def update_dispute(
        self,
        dispute_id: UUID,
        expected: tuple[DisputeStatus, ...],
        changes: dict[str, Any],
    ) -> Dispute | None:
        current = self.disputes.get(dispute_id)
        if current is None or current.status not in expected:
            return None
        updated = current.model_copy(update=changes)
        self.disputes[dispute_id] = updated
        return updated


class FakeNotifier:
    """Запоминает опубликованные уведомления."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        self.published.append((topic, payload))
        return True

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]

    def of_type(self, event_type: str) -> list[tuple[str, dict[str, Any]]]:
        return [(t, p) for t, p in self.published if p.get("type") == event_type]


class FakeGateway:
    """Шлюз с моками инициализации и возврата."""

    def __init__(self) -> None:
        self.is_configured = True
        self.initialize_transaction = AsyncMock(
            side_effect=lambda email, amount_minor, reference, currency, metadata=None: GatewayCheckout(
                reference=reference,
                authorization_url=f"https://checkout.paystack.test/{reference}",
                access_code="ac_test",
            )
        )
        self.refund = AsyncMock(return_value={"status": "pending"})


# =============================================================================
# ФИКСТУРЫ ДОМЕНА
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wallet_repo() -> FakeWalletRepository:
    return FakeWalletRepository()


@pytest.fixture
def escrow_repo(wallet_repo: FakeWalletRepository) -> FakeEscrowRepository:
    return FakeEscrowRepository(wallet_repo)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def wallet_service(wallet_repo: FakeWalletRepository) -> WalletService:
    return WalletService(wallet_repo, currency="NGN")


def _make_service(
    escrow_repo: FakeEscrowRepository,
    wallet_service: WalletService,
    notifier: FakeNotifier,
    clock: FakeClock,
    gateway: FakeGateway | None,
) -> EscrowService:
    return EscrowService(
        escrow_repo,
        wallet_service,
        notifier,
        gateway,
        fee_percent=Decimal("2.5"),
        hold_hours=72,
        currency="NGN",
        minor_units=100,
        retry_attempts=3,
        retry_base_delay=0,
        call_timeout=None,
        clock=clock,
    )


@pytest.fixture
def escrow_service(
    escrow_repo: FakeEscrowRepository,
    wallet_service: WalletService,
    notifier: FakeNotifier,
    clock: FakeClock,
) -> EscrowService:
    """Сервис без шлюза: возвраты идут на кошелёк."""
    return _make_service(escrow_repo, wallet_service, notifier, clock, gateway=None)


@pytest.fixture
def gateway_escrow_service(
    escrow_repo: FakeEscrowRepository,
    wallet_service: WalletService,
    notifier: FakeNotifier,
    clock: FakeClock,
    gateway: FakeGateway,
) -> EscrowService:
    """Сервис с настроенным шлюзом."""
    return _make_service(escrow_repo, wallet_service, notifier, clock, gateway=gateway)
