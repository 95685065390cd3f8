"""Background sweeper that periodically removes stale token records.

Redis TTLs already expire entries on their own; the sweeper reclaims keys
written without a TTL (manual writes, restored snapshots) and keeps the
in-memory store from growing between reads.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from lawrose_auth.logging import get_logger

if TYPE_CHECKING:
    from lawrose_auth.service.tokens import CleanupReport, TokenService

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
MIN_INTERVAL_SECONDS = 60
MAX_BACKOFF_SECONDS = 6 * 60 * 60


class CleanupSweeper:
    """Runs ``TokenService.cleanup_expired`` on a fixed interval."""

    def __init__(
        self,
        tokens: "TokenService",
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        batch_size: Optional[int] = None,
    ) -> None:
        self.tokens = tokens
        self.interval = max(MIN_INTERVAL_SECONDS, int(interval))
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("token_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_sweeper_stopped")

    async def run_once(self) -> "CleanupReport":
        return await self.tokens.cleanup_expired(self.batch_size)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_sweeper_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Back off on repeated failures
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "token_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)


__all__ = ["CleanupSweeper", "MIN_INTERVAL_SECONDS"]
