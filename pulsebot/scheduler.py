# pulsebot/scheduler.py

"""Per-bot scheduling and update engine.

One asyncio task per active bot acts as the bot's timer:
 - a near-immediate first tick (FIRST_TICK_DELAY_S after start)
 - then fixed-rate ticks at start + k * interval; deadlines missed by a slow
   tick are skipped, so ticks of one bot never overlap
 - a failing tick marks the bot "error" and ends the task

status == "active" iff the bot id is present in the timer registry. Every
transition goes through start/stop/delete or the tick error path, which keep
both sides in step.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from infra.metrics import METRICS, Metrics
from pulsebot import config
from pulsebot.errors import BotNotFound
from pulsebot.formatting import config_decimals, format_price, format_units, render_template
from pulsebot.models import Bot, utcnow
from pulsebot.notify import Notifier, NullNotifier
from pulsebot.storage import Storage

log = logging.getLogger("pulsebot.scheduler")


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, delay: float) -> None: ...


class LoopClock:
    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, float(delay)))


class AlertSource(Protocol):
    async def poll(self, bot: Bot) -> Optional[str]: ...


class PlaceholderAlertSource:
    """Reports monitoring status only; no transaction feed is consumed."""

    async def poll(self, bot: Bot) -> Optional[str]:
        if bot.type == "alert_whale":
            return "Monitoring for whale transactions"
        return "Monitoring for buy transactions"


@dataclass
class _BotTimer:
    bot_id: int
    interval_s: float
    task: Optional[asyncio.Task] = None


class BotScheduler:
    def __init__(
        self,
        storage: Storage,
        chain: Any,
        *,
        notifier: Optional[Notifier] = None,
        alerts: Optional[AlertSource] = None,
        clock: Optional[Clock] = None,
        first_tick_delay_s: float = config.FIRST_TICK_DELAY_S,
        metrics: Optional[Metrics] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.chain = chain
        self.notifier = notifier or NullNotifier()
        self.alerts = alerts or PlaceholderAlertSource()
        self.clock = clock or LoopClock()
        self.first_tick_delay_s = float(first_tick_delay_s)
        self.metrics = metrics or METRICS
        self._now_fn = now_fn
        self._timers: Dict[int, _BotTimer] = {}
        self._busy: Set[int] = set()

    # ------------------------
    # Introspection

    def is_running(self, bot_id: int) -> bool:
        return int(bot_id) in self._timers

    def active_bot_ids(self) -> List[int]:
        return sorted(self._timers.keys())

    # ------------------------
    # Lifecycle

    async def start(self, bot_id: int) -> Bot:
        bot_id = int(bot_id)
        bot = await self.storage.get_bot(bot_id)
        if bot is None:
            raise BotNotFound(bot_id)
        if bot.status == "active" and bot_id in self._timers:
            return bot

        updated = await self.storage.update_bot(bot_id, {"status": "active"})
        if updated is None:
            raise BotNotFound(bot_id)
        self._register(updated)
        log.info("Started bot %s (%s) every %ss", bot_id, updated.name, updated.update_frequency)
        return updated

    async def stop(self, bot_id: int) -> Bot:
        bot_id = int(bot_id)
        await self._cancel(bot_id)
        updated = await self.storage.update_bot(bot_id, {"status": "paused"})
        if updated is None:
            raise BotNotFound(bot_id)
        log.info("Stopped bot %s", bot_id)
        return updated

    async def restart(self, bot_id: int) -> Bot:
        await self.stop(bot_id)
        return await self.start(bot_id)

    async def delete(self, bot_id: int) -> bool:
        bot_id = int(bot_id)
        await self._cancel(bot_id)
        deleted = await self.storage.delete_bot(bot_id)
        if deleted:
            log.info("Deleted bot %s", bot_id)
        return deleted

    async def resume_active(self) -> int:
        """Register timers for bots persisted as active (e.g. after a process restart)."""
        resumed = 0
        for bot in await self.storage.list_bots():
            if bot.status == "active" and bot.id not in self._timers:
                self._register(bot)
                resumed += 1
        if resumed:
            log.info("Resumed %d active bots", resumed)
        return resumed

    async def shutdown(self) -> None:
        handles = list(self._timers.values())
        self._timers.clear()
        tasks = [h.task for h in handles if h.task is not None and not h.task.done()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("Scheduler shut down, cleared %d timers", len(handles))

    # ------------------------
    # Timer registry

    def _register(self, bot: Bot) -> None:
        stale = self._timers.pop(bot.id, None)
        if stale and stale.task and not stale.task.done():
            stale.task.cancel()
        handle = _BotTimer(bot_id=bot.id, interval_s=bot.interval_s)
        handle.task = asyncio.create_task(self._run_timer(handle), name=f"bot-timer-{bot.id}")
        self._timers[bot.id] = handle

    async def _cancel(self, bot_id: int) -> bool:
        handle = self._timers.pop(bot_id, None)
        if handle is None:
            return False
        task = handle.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return True

    def _owns(self, bot_id: int, handle: Optional[_BotTimer]) -> bool:
        if handle is None:
            return bot_id not in self._timers
        return self._timers.get(bot_id) is handle

    def _deregister(self, bot_id: int, handle: Optional[_BotTimer]) -> None:
        if handle is None or self._timers.get(bot_id) is not handle:
            return
        self._timers.pop(bot_id, None)
        task = handle.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_timer(self, handle: _BotTimer) -> None:
        try:
            await self._timer_loop(handle)
        except Exception as e:
            log.error("Timer for bot %s stopped: %s", handle.bot_id, e)
            self._deregister(handle.bot_id, handle)

    async def _timer_loop(self, handle: _BotTimer) -> None:
        started = self.clock.now()
        interval = float(handle.interval_s)
        await self.clock.sleep(self.first_tick_delay_s)
        if not await self._tick(handle.bot_id, handle):
            return

        k = 1
        while True:
            due = started + k * interval
            now = self.clock.now()
            if due < now:
                next_k = int((now - started) // interval) + 1
                self.metrics.inc("ticks_skipped_total", next_k - k)
                k = next_k
                due = started + k * interval
            await self.clock.sleep(due - now)
            k += 1
            if not await self._tick(handle.bot_id, handle):
                return

    # ------------------------
    # Tick

    async def run_tick(self, bot_id: int) -> bool:
        bot_id = int(bot_id)
        return await self._tick(bot_id, self._timers.get(bot_id))

    async def _tick(self, bot_id: int, handle: Optional[_BotTimer]) -> bool:
        """Run one tick. Returns False when the bot's timer should end."""
        if bot_id in self._busy:
            self.metrics.inc("ticks_skipped_total")
            return True
        self._busy.add(bot_id)
        try:
            return await self._process(bot_id, handle)
        finally:
            self._busy.discard(bot_id)

    async def _process(self, bot_id: int, handle: Optional[_BotTimer]) -> bool:
        try:
            bot = await self.storage.get_bot(bot_id)
        except Exception as e:
            log.error("Could not load bot %s: %s", bot_id, e)
            await self._fail(bot_id, handle)
            return False
        if bot is None:
            log.warning("Bot with ID %s not found during update", bot_id)
            self._deregister(bot_id, handle)
            return False
        if bot.status != "active":
            self._deregister(bot_id, handle)
            return False

        t0 = time.perf_counter()
        try:
            value = await self.resolve_value(bot)
        except Exception as e:
            self.metrics.inc("ticks_failed_total")
            log.error("Bot update error for ID %s: %s", bot_id, e)
            await self._fail(bot_id, handle)
            return False

        if value is None:
            return True
        if not self._owns(bot_id, handle):
            return False

        try:
            updated = await self.storage.update_bot(bot_id, {"last_value": value, "last_updated": self._now_fn()})
        except Exception as e:
            self.metrics.inc("ticks_failed_total")
            log.error("Could not store value for bot %s: %s", bot_id, e)
            await self._fail(bot_id, handle)
            return False
        if updated is None:
            return False
        self.metrics.inc("ticks_ok_total")
        self.metrics.observe("tick_latency_ms", (time.perf_counter() - t0) * 1000.0)
        log.info("Updated bot %s (%s) with value: %s", bot_id, bot.name, value)
        try:
            await self.notifier.publish(updated, value)
        except Exception as e:
            log.warning("Notifier failed for bot %s: %s", bot_id, e)
        return True

    async def _fail(self, bot_id: int, handle: Optional[_BotTimer]) -> None:
        """End the bot's timer and mark it errored, if this tick still owns the bot."""
        if not self._owns(bot_id, handle):
            return
        self._deregister(bot_id, handle)
        try:
            await self.storage.update_bot(bot_id, {"status": "error"})
        except Exception as e:
            log.error("Could not mark bot %s as errored: %s", bot_id, e)

    async def resolve_value(self, bot: Bot) -> Optional[str]:
        """Fetch and format the bot's metric. None means the bot is not configured for it."""
        cfg: Dict[str, Any] = dict(bot.configuration or {})

        if bot.type == "standard":
            metric = cfg.get("metric_type")
            if metric == "price" and cfg.get("pair_address"):
                price = await self.chain.get_pair_price(bot.network, cfg["pair_address"], cfg)
                return format_price(price)
            if metric == "supply" and bot.token_address:
                supply = await self.chain.get_token_supply(bot.network, bot.token_address)
                return format_units(supply, config_decimals(cfg))
            if metric == "balance" and bot.token_address and cfg.get("wallet_address"):
                balance = await self.chain.get_token_balance(bot.network, bot.token_address, cfg["wallet_address"])
                return format_units(balance, config_decimals(cfg))
            return None

        if bot.type in ("alert_whale", "alert_buy"):
            return await self.alerts.poll(bot)

        if bot.type == "custom_rpc":
            fn = cfg.get("function_signature")
            if not bot.token_address or not fn:
                return None
            result = await self.chain.call_contract_function(bot.network, bot.token_address, fn, cfg.get("args") or [])
            formatter = cfg.get("formatter")
            if formatter:
                return render_template(formatter, result)
            return str(result)

        return None
