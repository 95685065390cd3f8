"""Unit tests for the Redis key-value store against a mocked redis.asyncio client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from lawrose_auth.storage.errors import StoreUnavailableError
from lawrose_auth.storage.redis_cache import RedisKeyValueStore


@pytest.fixture
def client():
    mock = MagicMock()
    mock.register_script.return_value = AsyncMock(return_value=1)
    mock.set = AsyncMock(return_value=True)
    mock.get = AsyncMock(return_value=None)
    mock.mget = AsyncMock(return_value=[])
    mock.delete = AsyncMock(return_value=0)
    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    mock.connection_pool.disconnect = AsyncMock()
    return mock


@pytest.fixture
def redis_store(client):
    return RedisKeyValueStore(
        "redis://localhost:6379/0",
        key_prefix="lawrose:user:",
        socket_timeout=0.05,
        client=client,
    )


async def test_set_uses_prefix_px_and_nx(redis_store, client):
    assert await redis_store.set("blacklist:abc", "123", 5000, only_if_absent=True) is True
    client.set.assert_awaited_once_with(
        "lawrose:user:blacklist:abc", "123", px=5000, nx=True
    )


async def test_set_reports_existing_key(redis_store, client):
    client.set.return_value = None
    assert await redis_store.set("k", "v", 1000, only_if_absent=True) is False


async def test_set_rejects_non_positive_ttl(redis_store, client):
    with pytest.raises(ValueError):
        await redis_store.set("k", "v", 0)
    client.set.assert_not_called()


async def test_get_and_get_many_prefix_keys(redis_store, client):
    client.get.return_value = "value"
    client.mget.return_value = ["a", None]

    assert await redis_store.get("k") == "value"
    assert await redis_store.get_many(["x", "y"]) == ["a", None]

    client.get.assert_awaited_once_with("lawrose:user:k")
    client.mget.assert_awaited_once_with(["lawrose:user:x", "lawrose:user:y"])
    assert await redis_store.get_many([]) == []


async def test_delete_counts_removed_keys(redis_store, client):
    client.delete.return_value = 2
    assert await redis_store.delete("a", "b") == 2
    client.delete.assert_awaited_once_with("lawrose:user:a", "lawrose:user:b")
    assert await redis_store.delete() == 0


async def test_delete_if_equals_runs_script(redis_store, client):
    script = client.register_script.return_value
    assert await redis_store.delete_if_equals("magic_link:k", "payload") is True
    script.assert_awaited_once_with(keys=["lawrose:user:magic_link:k"], args=["payload"])

    script.return_value = 0
    assert await redis_store.delete_if_equals("magic_link:k", "payload") is False


async def test_scan_strips_prefix_and_batches(redis_store, client):
    async def _scan_iter(**kwargs):
        for i in range(5):
            yield f"lawrose:user:blacklist:{i}"

    client.scan_iter = MagicMock(side_effect=_scan_iter)

    batches = [b async for b in redis_store.scan("blacklist:*", batch_size=2)]

    assert batches == [
        ["blacklist:0", "blacklist:1"],
        ["blacklist:2", "blacklist:3"],
        ["blacklist:4"],
    ]
    client.scan_iter.assert_called_once_with(match="lawrose:user:blacklist:*", count=2)


async def test_scan_failure_raises_store_unavailable(redis_store, client):
    async def _scan_iter(**kwargs):
        raise RedisConnectionError("connection refused")
        yield

    client.scan_iter = MagicMock(side_effect=_scan_iter)
    with pytest.raises(StoreUnavailableError):
        async for _ in redis_store.scan("blacklist:*"):
            pass


async def test_redis_error_raises_store_unavailable(redis_store, client):
    client.get.side_effect = RedisConnectionError("connection refused")
    with pytest.raises(StoreUnavailableError) as exc_info:
        await redis_store.get("k")
    assert exc_info.value.operation == "get"


async def test_slow_command_times_out(redis_store, client):
    async def _slow(*args, **kwargs):
        await asyncio.sleep(1)

    client.get.side_effect = _slow
    with pytest.raises(StoreUnavailableError):
        await redis_store.get("k")


async def test_ping_and_close(redis_store, client):
    assert await redis_store.ping() is True
    await redis_store.close()
    client.aclose.assert_awaited_once()
    client.connection_pool.disconnect.assert_awaited_once()


def test_verify_connection_pings_with_sync_client(redis_store):
    with patch("lawrose_auth.storage.redis_cache.Redis") as redis_cls:
        sync_client = redis_cls.from_url.return_value
        redis_store.verify_connection()
    sync_client.ping.assert_called_once()
    sync_client.close.assert_called_once()
