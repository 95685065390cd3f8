from __future__ import annotations

import fnmatch
import threading
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from lawrose_auth.storage.common import DEFAULT_SCAN_BATCH_SIZE, chunked


class MemoryKeyValueStore:
    """In-process key-value store with millisecond TTLs.

    Only valid for a single process (tests and local development); state is
    not shared between service instances, so production config rejects it.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        # key -> (value, expires_at epoch seconds or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()

    def _live_value(self, key: str) -> Optional[str]:
        """Return the value for key, evicting it if its TTL has elapsed (call under lock)."""
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

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
        expires_at = self._clock() + ttl_ms / 1000.0 if ttl_ms is not None else None
        with self._data_lock:
            if only_if_absent and self._live_value(key) is not None:
                return False
            self._data[key] = (value, expires_at)
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live_value(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._data_lock:
            return [self._live_value(key) for key in keys]

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live_value(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with self._data_lock:
            if self._live_value(key) != expected:
                return False
            del self._data[key]
            return True

    async def scan(
        self, pattern: str, *, batch_size: int = DEFAULT_SCAN_BATCH_SIZE
    ) -> AsyncIterator[List[str]]:
        with self._data_lock:
            matches = [
                key
                for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live_value(key) is not None
            ]
        for batch in chunked(matches, batch_size):
            yield batch

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._data_lock:
            return sum(1 for key in list(self._data) if self._live_value(key) is not None)


__all__ = ["MemoryKeyValueStore"]
