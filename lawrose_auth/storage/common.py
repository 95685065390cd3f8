"""Key-value store contract shared by the Redis and in-memory backends.

Token records and revocation entries only ever touch the store through this
interface, so the token services stay independent of the concrete backend.
"""

from __future__ import annotations

from typing import AsyncIterator, List, Optional, Protocol, Sequence

# Key namespaces owned by the token subsystem
MAGIC_LINK_PREFIX = "magic_link"
EMAIL_VERIFICATION_PREFIX = "verification"
PASSWORD_RESET_PREFIX = "password_reset"
BLACKLIST_PREFIX = "blacklist"

SWEEP_PATTERNS = (
    f"{MAGIC_LINK_PREFIX}:*",
    f"{EMAIL_VERIFICATION_PREFIX}:*",
    f"{PASSWORD_RESET_PREFIX}:*",
    f"{BLACKLIST_PREFIX}:*",
)

DEFAULT_SCAN_BATCH_SIZE = 100


class KeyValueStore(Protocol):
    async def set(
        self,
        key: str,
        value: str,
        ttl_ms: Optional[int] = None,
        *,
        only_if_absent: bool = False,
    ) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_if_equals(self, key: str, expected: str) -> bool: ...

    def scan(
        self, pattern: str, *, batch_size: int = DEFAULT_SCAN_BATCH_SIZE
    ) -> AsyncIterator[List[str]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def chunked(keys: Sequence[str], size: int) -> List[List[str]]:
    """Split keys into lists of at most ``size`` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [list(keys[i : i + size]) for i in range(0, len(keys), size)]


__all__ = [
    "BLACKLIST_PREFIX",
    "DEFAULT_SCAN_BATCH_SIZE",
    "EMAIL_VERIFICATION_PREFIX",
    "KeyValueStore",
    "MAGIC_LINK_PREFIX",
    "PASSWORD_RESET_PREFIX",
    "SWEEP_PATTERNS",
    "chunked",
]
