from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from lawrose_auth.config import Environment, Settings, get_settings, reset_settings_cache
from lawrose_auth.logging import get_logger
from lawrose_auth.service.sweeper import CleanupSweeper
from lawrose_auth.service.tokens import TokenService
from lawrose_auth.storage.memory import MemoryKeyValueStore
from lawrose_auth.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton store and token services for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        self.store: Union[MemoryKeyValueStore, RedisKeyValueStore]
        if self.settings.use_memory_store:
            self.store = MemoryKeyValueStore()
        else:
            store = RedisKeyValueStore(
                self.settings.redis_url,
                key_prefix=self.settings.redis_key_prefix,
                socket_timeout=self.settings.redis_socket_timeout,
            )
            try:
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for one-time tokens and revocations; "
                    "start Redis or set USE_MEMORY_STORE=true for local development."
                ) from exc
            self.store = store

        self.tokens = TokenService(self.store, self.settings)
        self.sweeper: Optional[CleanupSweeper] = None
        if self.settings.cleanup_enabled:
            self.sweeper = CleanupSweeper(
                self.tokens,
                interval=self.settings.cleanup_interval_seconds,
                batch_size=self.settings.cleanup_batch_size,
            )

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
            redis_url=None
            if self.settings.use_memory_store
            else _mask_url_password(self.settings.redis_url),
            cleanup_enabled=self.sweeper is not None,
        )

    async def close(self) -> None:
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed when APP_ENV=test")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
