from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.base import TokenStore
from sessionkeeper.storage.errors import StorageError
from sessionkeeper.storage.models import utcnow

logger = get_logger(__name__)


class CleanupSweeper:
    """Deletes expired refresh rows and revoked rows past the retention window.

    Recently revoked rows are kept so reuse and theft events stay visible
    until ``retention`` has elapsed.
    """

    def __init__(
        self,
        store: TokenStore,
        retention: timedelta,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention = retention
        self._now = now_fn

    def cutoff(self) -> datetime:
        return self._now() - self.retention

    async def preview(self) -> int:
        """Count the rows a sweep would delete right now. Storage errors propagate."""

        now = self._now()
        return await asyncio.to_thread(
            self.store.count_stale_tokens, now=now, revoked_before=now - self.retention
        )

    async def sweep(self) -> int:
        """One pass; returns the number of rows deleted, 0 when the store failed."""

        now = self._now()
        revoked_before = now - self.retention
        try:
            deleted = await asyncio.to_thread(
                self.store.delete_stale_tokens, now=now, revoked_before=revoked_before
            )
        except StorageError as exc:
            logger.error("token_cleanup_failed", error=str(exc))
            return 0
        logger.info(
            "token_cleanup_complete",
            deleted=deleted,
            revoked_before=revoked_before.isoformat(),
        )
        return deleted


async def run_periodic_cleanup(sweeper: CleanupSweeper, interval_seconds: float) -> None:
    """Background loop that sweeps every ``interval_seconds`` until cancelled."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await sweeper.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("token_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_cleanup_task_cancelled")
