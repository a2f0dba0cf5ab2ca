from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pulsebot.storage import Storage

log = logging.getLogger("pulsebot.stats")


def seconds_until_midnight(now: datetime) -> float:
    """Seconds from `now` until the next UTC midnight (always > 0)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1.0, (tomorrow - now).total_seconds())


class PlatformStatsRecorder:
    """RPC call counters and the daily counter reset."""

    def __init__(
        self,
        storage: Storage,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.storage = storage
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._reset_task: Optional[asyncio.Task] = None

    async def record_rpc_call(self) -> None:
        stats = await self.storage.get_platform_stats()
        await self.storage.update_platform_stats(
            {
                "total_rpc_calls": int(stats.total_rpc_calls) + 1,
                "daily_rpc_calls": int(stats.daily_rpc_calls) + 1,
            }
        )

    async def reset_daily(self) -> None:
        await self.storage.update_platform_stats({"daily_rpc_calls": 0})
        log.info("Daily RPC call counter reset")

    def start(self) -> None:
        if self._reset_task and not self._reset_task.done():
            return
        self._reset_task = asyncio.create_task(self._reset_loop())

    async def stop(self) -> None:
        task = self._reset_task
        self._reset_task = None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _reset_loop(self) -> None:
        while True:
            delay = seconds_until_midnight(self._now_fn())
            log.info("Scheduled RPC counter reset in %.1f hours", delay / 3600.0)
            await asyncio.sleep(delay)
            try:
                await self.reset_daily()
            except Exception:
                log.exception("Failed to reset daily RPC call counter")
