from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Protocol

from pulsebot.models import BillingEvent, Bot, PlatformStats, User, utcnow


class Storage(Protocol):
    """Persistence contract consumed by the scheduler, billing and HTTP layers.

    Any key-value or relational store can back it; the in-memory implementation
    below is what the server runs with out of the box.
    """

    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def get_user_by_customer_id(self, customer_id: str) -> Optional[User]: ...

    async def create_user(self, **fields: Any) -> User: ...

    async def update_user(self, user_id: int, updates: Dict[str, Any]) -> Optional[User]: ...

    async def list_users(self) -> List[User]: ...

    async def get_bot(self, bot_id: int) -> Optional[Bot]: ...

    async def get_bots_by_user(self, user_id: int) -> List[Bot]: ...

    async def list_bots(self) -> List[Bot]: ...

    async def create_bot(self, **fields: Any) -> Bot: ...

    async def update_bot(self, bot_id: int, updates: Dict[str, Any]) -> Optional[Bot]: ...

    async def delete_bot(self, bot_id: int) -> bool: ...

    async def create_billing_event(self, event_id: str, type: str, data: Dict[str, Any]) -> BillingEvent: ...

    async def get_billing_event(self, event_id: str) -> Optional[BillingEvent]: ...

    async def mark_billing_event_processed(self, id: int) -> bool: ...

    async def get_platform_stats(self) -> PlatformStats: ...

    async def update_platform_stats(self, updates: Dict[str, Any]) -> PlatformStats: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._users: Dict[int, User] = {}
        self._bots: Dict[int, Bot] = {}
        self._events: Dict[int, BillingEvent] = {}
        self._stats = PlatformStats()
        self._next_user_id = 1
        self._next_bot_id = 1
        self._next_event_id = 1

    # users

    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(int(user_id))

    async def get_user_by_customer_id(self, customer_id: str) -> Optional[User]:
        for user in self._users.values():
            if customer_id and user.customer_id == customer_id:
                return user
        return None

    async def create_user(self, **fields: Any) -> User:
        uid = self._next_user_id
        self._next_user_id += 1
        user = User(id=uid, **fields)
        self._users[uid] = user
        self._stats = dataclasses.replace(
            self._stats,
            total_users=self._stats.total_users + 1,
            updated_at=utcnow(),
        )
        return user

    async def update_user(self, user_id: int, updates: Dict[str, Any]) -> Optional[User]:
        user = self._users.get(int(user_id))
        if user is None:
            return None
        updated = dataclasses.replace(user, **updates)
        self._users[user.id] = updated
        return updated

    async def list_users(self) -> List[User]:
        return list(self._users.values())

    # bots

    async def get_bot(self, bot_id: int) -> Optional[Bot]:
        return self._bots.get(int(bot_id))

    async def get_bots_by_user(self, user_id: int) -> List[Bot]:
        return [b for b in self._bots.values() if b.user_id == int(user_id)]

    async def list_bots(self) -> List[Bot]:
        return list(self._bots.values())

    async def create_bot(self, **fields: Any) -> Bot:
        bid = self._next_bot_id
        self._next_bot_id += 1
        fields.pop("status", None)
        bot = Bot(id=bid, status="configured", last_value=None, last_updated=None, **fields)
        self._bots[bid] = bot
        return bot

    async def update_bot(self, bot_id: int, updates: Dict[str, Any]) -> Optional[Bot]:
        bot = self._bots.get(int(bot_id))
        if bot is None:
            return None
        updated = dataclasses.replace(bot, **updates)
        self._bots[bot.id] = updated

        new_status = updates.get("status")
        if new_status == "active" and bot.status != "active":
            self._bump_active(1)
        elif bot.status == "active" and new_status and new_status != "active":
            self._bump_active(-1)
        return updated

    async def delete_bot(self, bot_id: int) -> bool:
        bot = self._bots.pop(int(bot_id), None)
        if bot is None:
            return False
        if bot.status == "active":
            self._bump_active(-1)
        return True

    def _bump_active(self, delta: int) -> None:
        self._stats = dataclasses.replace(
            self._stats,
            active_bots=max(0, self._stats.active_bots + int(delta)),
            updated_at=utcnow(),
        )

    # billing events

    async def create_billing_event(self, event_id: str, type: str, data: Dict[str, Any]) -> BillingEvent:
        eid = self._next_event_id
        self._next_event_id += 1
        event = BillingEvent(id=eid, event_id=str(event_id), type=str(type), data=dict(data))
        self._events[eid] = event
        return event

    async def get_billing_event(self, event_id: str) -> Optional[BillingEvent]:
        for event in self._events.values():
            if event.event_id == event_id:
                return event
        return None

    async def mark_billing_event_processed(self, id: int) -> bool:
        event = self._events.get(int(id))
        if event is None:
            return False
        self._events[event.id] = dataclasses.replace(event, processed=True)
        return True

    # platform stats

    async def get_platform_stats(self) -> PlatformStats:
        return self._stats

    async def update_platform_stats(self, updates: Dict[str, Any]) -> PlatformStats:
        fields = dict(updates)
        fields["updated_at"] = utcnow()
        self._stats = dataclasses.replace(self._stats, **fields)
        return self._stats
