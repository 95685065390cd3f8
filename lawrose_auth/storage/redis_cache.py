from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, List, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from lawrose_auth.logging import get_logger
from lawrose_auth.storage.common import DEFAULT_SCAN_BATCH_SIZE
from lawrose_auth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Redis-backed key-value store for one-time tokens and revocations.

    Every command is bounded by ``operation_timeout`` so a store outage
    degrades individual requests instead of hanging them. Timeouts and
    connection failures surface as ``StoreUnavailableError``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic compare-and-delete: only the caller that still sees the value it
    # validated gets to remove it.
    _DELETE_IF_EQUALS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.operation_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_if_equals = self.client.register_script(
            self._DELETE_IF_EQUALS_SCRIPT
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip(self, key: str) -> str:
        if self.key_prefix and key.startswith(self.key_prefix):
            return key[len(self.key_prefix) :]
        return key

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("redis_operation_timeout", operation=operation)
            raise StoreUnavailableError(
                f"redis {operation} timed out", operation=operation
            ) from exc
        except (RedisError, OSError) as exc:
            logger.warning(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                f"redis {operation} failed", operation=operation
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(
        self,
        key: str,
        value: str,
        ttl_ms: Optional[int] = None,
        *,
        only_if_absent: bool = False,
    ) -> bool:
        if ttl_ms is not None and ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        result = await self._call(
            "set",
            self.client.set(self._key(key), value, px=ttl_ms, nx=only_if_absent),
        )
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(self._key(key)))

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(
            await self._call("mget", self.client.mget([self._key(k) for k in keys]))
        )

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        result = await self._call(
            "delete", self.client.delete(*(self._key(k) for k in keys))
        )
        return int(result)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        result = await self._call(
            "delete_if_equals",
            self._delete_if_equals(keys=[self._key(key)], args=[expected]),
        )
        return bool(int(result))

    async def scan(
        self, pattern: str, *, batch_size: int = DEFAULT_SCAN_BATCH_SIZE
    ) -> AsyncIterator[List[str]]:
        """Yield matching keys (prefix stripped) in batches of at most ``batch_size``.

        Uses SCAN rather than KEYS so enumeration never blocks the server.
        """
        batch: List[str] = []
        try:
            async for raw_key in self.client.scan_iter(
                match=self._key(pattern), count=batch_size
            ):
                batch.append(self._strip(raw_key))
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
        except (RedisError, OSError) as exc:
            logger.warning("redis_scan_failed", pattern=pattern, error=str(exc))
            raise StoreUnavailableError("redis scan failed", operation="scan") from exc
        if batch:
            yield batch

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisKeyValueStore"]
