from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import stripe

from pulsebot import config
from pulsebot.errors import BillingError, ValidationError
from pulsebot.models import User
from pulsebot.storage import Storage

log = logging.getLogger("pulsebot.billing")

# Webhooks signed longer ago than this are rejected.
SIGNATURE_TOLERANCE_S = 300


def _plain(obj: Any) -> Dict[str, Any]:
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(obj)


class BillingService:
    """Stripe subscription items per bot and billing webhook handling.

    Every bot is one subscription item on the owner's active subscription.
    The Stripe SDK is synchronous, so calls run in a worker thread; ``client``
    defaults to the ``stripe`` module and tests pass a stand-in with the same
    resource attributes. Without an API key the provider calls are skipped and
    bots are created without a line item.

    Webhook events that end a subscription pause the customer's bots through
    the scheduler so bot status and timers stay in step.
    """

    def __init__(
        self,
        storage: Storage,
        scheduler: Any,
        *,
        api_key: str = "",
        webhook_secret: str = "",
        client: Any = None,
    ) -> None:
        self.storage = storage
        self.scheduler = scheduler
        self.api_key = str(api_key or "")
        self.webhook_secret = str(webhook_secret or "")
        self.client = client if client is not None else stripe
        if not self.api_key:
            log.warning("Stripe API key not set; payment functionality is disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _call(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            log.error("Stripe request failed: %s", exc)
            raise BillingError(f"Billing request failed: {exc.user_message or exc}") from exc

    def price_id_for(self, bot_type: str, update_frequency: str) -> Optional[str]:
        return config.PRICE_IDS.get(config.price_id_key(bot_type, str(update_frequency)))

    # ------------------------
    # Customers / sessions

    async def create_customer(self, user: User) -> Optional[str]:
        if not self.enabled or not user.email:
            return None
        customer = await self._call(
            self.client.Customer.create,
            email=user.email,
            name=user.username,
            metadata={"discord_id": user.discord_id},
        )
        log.info("Created customer %s for user %s", customer["id"], user.id)
        return str(customer["id"])

    async def get_customer_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        subs = await self._call(self.client.Subscription.list, customer=customer_id, status="active", limit=1)
        data = subs["data"]
        return _plain(data[0]) if data else None

    async def create_checkout_session(self, customer_id: str, price_id: str, success_url: str, cancel_url: str) -> Any:
        if not self.enabled:
            raise BillingError("Billing is not configured")
        return await self._call(
            self.client.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
        )

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> Any:
        if not self.enabled:
            raise BillingError("Billing is not configured")
        return await self._call(self.client.billing_portal.Session.create, customer=customer_id, return_url=return_url)

    # ------------------------
    # Subscription items

    async def add_subscription_item(self, customer_id: str, price_id: str, description: str) -> Optional[str]:
        """Add a bot's line item, opening a subscription when the customer has none."""
        if not customer_id:
            raise BillingError("Subscription required to create bots")
        if not self.enabled:
            return None
        subs = await self._call(self.client.Subscription.list, customer=customer_id, status="active", limit=1)
        if subs["data"]:
            item = await self._call(
                self.client.SubscriptionItem.create,
                subscription=subs["data"][0]["id"],
                price=price_id,
                metadata={"description": description},
            )
            item_id = str(item["id"])
        else:
            sub = await self._call(
                self.client.Subscription.create,
                customer=customer_id,
                items=[{"price": price_id}],
                metadata={"description": description},
            )
            item_id = str(sub["items"]["data"][0]["id"])
        log.info("Added subscription item %s (%s) for %s", item_id, price_id, customer_id)
        return item_id

    async def update_subscription_item(self, item_id: str, price_id: str) -> None:
        if not self.enabled:
            return
        await self._call(self.client.SubscriptionItem.modify, item_id, price=price_id)
        log.info("Subscription item %s moved to %s", item_id, price_id)

    async def remove_subscription_item(self, item_id: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self._call(self.client.SubscriptionItem.delete, item_id)
        except BillingError:
            return False
        log.info("Removed subscription item %s", item_id)
        return True

    # ------------------------
    # Webhooks

    def construct_event(self, payload: bytes, header: Optional[str]) -> Dict[str, Any]:
        """Verify a ``Stripe-Signature`` header and return the event as a dict."""
        if not self.webhook_secret:
            raise BillingError("Webhook secret not configured")
        try:
            event = json.loads(payload.decode("utf-8"))
        except ValueError as exc:
            raise ValidationError("Webhook body must be JSON") from exc
        # Stripe only sends objects; Event.construct_from cannot take anything else.
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be an object")
        try:
            stripe.Webhook.construct_event(payload, header or "", self.webhook_secret, tolerance=SIGNATURE_TOLERANCE_S)
        except stripe.SignatureVerificationError as exc:
            raise BillingError("Invalid signature") from exc
        return event

    async def handle_event(self, event: Dict[str, Any]) -> bool:
        """Apply a billing event. Returns False for duplicates already processed."""
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id or not event_type:
            raise BillingError("Malformed event")
        existing = await self.storage.get_billing_event(event_id)
        if existing is not None and existing.processed:
            return False
        record = existing or await self.storage.create_billing_event(event_id, event_type, dict(event.get("data") or {}))

        obj = (event.get("data") or {}).get("object") or {}
        customer_id = str(obj.get("customer") or "")
        user = await self.storage.get_user_by_customer_id(customer_id) if customer_id else None

        if user is not None:
            if event_type in ("customer.subscription.created", "customer.subscription.updated"):
                status = str(obj.get("status") or "")
                if status in config.SUBSCRIPTION_STATUSES:
                    await self.storage.update_user(user.id, {"subscription_status": status})
            elif event_type == "customer.subscription.deleted":
                await self.storage.update_user(user.id, {"subscription_status": "inactive"})
                await self._pause_user_bots(user.id)
            elif event_type == "invoice.payment_succeeded":
                await self.storage.update_user(user.id, {"subscription_status": "active"})
                paid = obj.get("amount_paid")
                if isinstance(paid, int) and paid > 0:
                    stats = await self.storage.get_platform_stats()
                    await self.storage.update_platform_stats({"revenue": int(stats.revenue) + paid})
            elif event_type == "invoice.payment_failed":
                await self.storage.update_user(user.id, {"subscription_status": "past_due"})
        else:
            log.info("Billing event %s (%s) has no matching user", event_id, event_type)

        await self.storage.mark_billing_event_processed(record.id)
        return True

    async def _pause_user_bots(self, user_id: int) -> None:
        for bot in await self.storage.get_bots_by_user(user_id):
            if bot.status == "active":
                await self.scheduler.stop(bot.id)
                log.info("Paused bot %s after subscription ended", bot.id)
