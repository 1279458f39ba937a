# tests/infra/test_redis_client.py
"""
Unit тесты для клиента Redis (src/infra/redis_client.py).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.infra.redis_client import RedisClient, close_redis, get_redis


def make_pipeline_client(results: list) -> tuple[MagicMock, MagicMock]:
    """Клиент, у которого pipeline() отдаёт pipe с заданным результатом execute."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=results)
    client = MagicMock()
    client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
    return client, pipe


class TestRedisClient:
    """Тесты для RedisClient."""

    @pytest.fixture
    def redis_client(self) -> RedisClient:
        """Создаёт экземпляр RedisClient для тестов."""
        # Сбрасываем синглтон для каждого теста
        RedisClient._instance = None
        RedisClient._client = None
        return RedisClient()

    def test_singleton(self) -> None:
        """Проверяет паттерн Singleton."""
        RedisClient._instance = None

        assert RedisClient() is RedisClient()
        assert get_redis() is RedisClient()

    def test_client_not_initialized(self, redis_client: RedisClient) -> None:
        """Проверяет ошибку при обращении к неинициализированному клиенту."""
        with pytest.raises(RuntimeError, match="Redis клиент не инициализирован"):
            _ = redis_client.client
        assert redis_client.is_connected is False

    def test_make_key(self, redis_client: RedisClient) -> None:
        """Проверяет формирование ключа с namespace."""
        assert redis_client._make_key("rl:user:GUEST:/api") == "brillprime:rl:user:GUEST:/api"

    @pytest.mark.asyncio
    async def test_connect(self, redis_client: RedisClient) -> None:
        """Подключение проверяется PING и задаёт namespace."""
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(return_value=True)

        with patch("redis.asyncio.from_url", return_value=mock_redis) as mock_from_url:
            await redis_client.connect(
                url="redis://localhost:6379/0",
                max_connections=10,
                namespace="bp_test",
                socket_timeout=0.5,
            )

        mock_redis.ping.assert_awaited_once()
        assert mock_from_url.call_args.kwargs["decode_responses"] is True
        assert mock_from_url.call_args.kwargs["socket_timeout"] == 0.5
        assert redis_client.is_connected
        assert redis_client._make_key("k") == "bp_test:k"

    @pytest.mark.asyncio
    async def test_connect_ping_failure_leaves_disconnected(self, redis_client: RedisClient) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(side_effect=ConnectionError("refused"))

        with patch("redis.asyncio.from_url", return_value=mock_redis):
            with pytest.raises(ConnectionError):
                await redis_client.connect(url="redis://localhost:6379/0")

        assert redis_client.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_already_connected(self, redis_client: RedisClient) -> None:
        """Проверяет, что повторное подключение пропускается."""
        redis_client._client = AsyncMock()

        with patch("redis.asyncio.from_url") as mock_from_url:
            await redis_client.connect(url="redis://localhost:6379/0")

        mock_from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_disconnect(self, redis_client: RedisClient) -> None:
        """Проверяет отключение от Redis."""
        mock_redis = AsyncMock()
        redis_client._client = mock_redis

        await redis_client.disconnect()

        mock_redis.aclose.assert_awaited_once()
        assert redis_client._client is None

    @pytest.mark.asyncio
    async def test_basic_operations_use_namespace(self, redis_client: RedisClient) -> None:
        mock_redis = AsyncMock()
        mock_redis.get.return_value = "value"
        mock_redis.set.return_value = True
        mock_redis.delete.return_value = 1
        mock_redis.pttl.return_value = 1500
        redis_client._client = mock_redis

        assert await redis_client.get("key") == "value"
        assert await redis_client.set("key", "value", ttl=60) is True
        assert await redis_client.delete("key") == 1
        assert await redis_client.pttl("key") == 1500

        mock_redis.get.assert_awaited_once_with("brillprime:key")
        mock_redis.set.assert_awaited_once_with("brillprime:key", "value", ex=60)
        mock_redis.delete.assert_awaited_once_with("brillprime:key")
        mock_redis.pttl.assert_awaited_once_with("brillprime:key")

    @pytest.mark.asyncio
    async def test_incr_window(self, redis_client: RedisClient) -> None:
        """Счётчик окна: SET NX PX, INCR и PTTL в одной транзакции."""
        client, pipe = make_pipeline_client([True, 3, 59_000])
        redis_client._client = client

        count, ttl_ms = await redis_client.incr_window("rl:user:GUEST:/api", 60_000)

        assert (count, ttl_ms) == (3, 59_000)
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("brillprime:rl:user:GUEST:/api", 0, nx=True, px=60_000)
        pipe.incr.assert_called_once_with("brillprime:rl:user:GUEST:/api")
        pipe.pttl.assert_called_once_with("brillprime:rl:user:GUEST:/api")

    @pytest.mark.asyncio
    async def test_incr_window_key_without_ttl(self, redis_client: RedisClient) -> None:
        client, _ = make_pipeline_client([None, "1", "-1"])
        redis_client._client = client

        assert await redis_client.incr_window("k", 1000) == (1, -1)

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client: RedisClient) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping.return_value = True
        redis_client._client = mock_redis

        assert await redis_client.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self, redis_client: RedisClient) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping.side_effect = ConnectionError("down")
        redis_client._client = mock_redis

        assert await redis_client.health_check() is False


class TestModuleFunctions:
    """Функции модуля."""

    @pytest.mark.asyncio
    async def test_close_redis(self) -> None:
        mock_client = MagicMock()
        mock_client.disconnect = AsyncMock()

        with patch("src.infra.redis_client.get_redis", return_value=mock_client):
            await close_redis()

        mock_client.disconnect.assert_awaited_once()
