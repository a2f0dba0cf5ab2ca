"""Publishing of fresh bot values to the chat platform.

The scheduler hands every successfully resolved value to a notifier after it
has been persisted. NullNotifier keeps values in storage only; the Discord
notifier posts them to the bot's channel with the bot's own credential.
Delivery is best effort: failures are logged and never reach the tick.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import aiohttp

from pulsebot.models import Bot
from pulsebot.vault import TokenVault

log = logging.getLogger("pulsebot.notify")


class Notifier(Protocol):
    async def publish(self, bot: Bot, value: str) -> None: ...

    async def close(self) -> None: ...


class NullNotifier:
    async def publish(self, bot: Bot, value: str) -> None:
        return

    async def close(self) -> None:
        return


class DiscordChannelNotifier:
    def __init__(self, vault: TokenVault, *, api_base: str = "https://discord.com/api/v10", timeout: float = 5.0) -> None:
        self.vault = vault
        self.api_base = api_base.rstrip("/")
        self.timeout = float(timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _url(self, channel_id: str) -> str:
        return f"{self.api_base}/channels/{channel_id}/messages"

    async def publish(self, bot: Bot, value: str) -> None:
        if not bot.channel_id or not bot.bot_token:
            return
        try:
            token = self.vault.decrypt(bot.bot_token)
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            async with self._session.post(
                self._url(bot.channel_id),
                json={"content": f"**{bot.name}**: {value}"},
                headers={"Authorization": token if token.startswith("Bot ") else f"Bot {token}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    log.warning("Discord post for bot %s returned HTTP %s", bot.id, resp.status)
        except Exception as e:
            # Chat delivery is optional: the value is already persisted.
            log.warning("Discord post for bot %s failed: %s", bot.id, e)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
