import json
import time

import pytest

from infra.metrics import Metrics
from pulsebot.billing import BillingService
from pulsebot.errors import BillingError, ValidationError
from pulsebot.models import User
from pulsebot.scheduler import BotScheduler
from pulsebot.storage import MemoryStorage

SECRET = "whsec_test"
API_KEY = "sk_test_billing"


class IdleChain:
    async def get_token_supply(self, network: str, token: str) -> str:
        return "0"


async def _setup():
    storage = MemoryStorage()
    scheduler = BotScheduler(storage, IdleChain(), first_tick_delay_s=3600.0, metrics=Metrics())
    billing = BillingService(storage, scheduler, webhook_secret=SECRET)
    user = await storage.create_user(discord_id="d1", username="alice", customer_id="cus_1", subscription_status="active")
    return storage, scheduler, billing, user


def _event(event_id: str, event_type: str, **obj):
    obj.setdefault("customer", "cus_1")
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _stripe_billing(fake_stripe) -> BillingService:
    return BillingService(MemoryStorage(), None, api_key=API_KEY, webhook_secret=SECRET, client=fake_stripe)


def test_price_ids() -> None:
    billing = BillingService(MemoryStorage(), None)
    assert billing.price_id_for("standard", "15") == "price_standard_15s"
    assert billing.price_id_for("alert_buy", "60") == "price_alert_60s"
    assert billing.price_id_for("standard", "5") is None


@pytest.mark.asyncio
async def test_subscription_items(fake_stripe) -> None:
    billing = _stripe_billing(fake_stripe)

    # first bot opens the subscription, later bots add items to it
    first = await billing.add_subscription_item("cus_1", "price_standard_60s", "Bot: Tracker")
    second = await billing.add_subscription_item("cus_1", "price_custom_30s", "Bot: Custom")
    assert fake_stripe.names() == [
        "Subscription.list",
        "Subscription.create",
        "Subscription.list",
        "SubscriptionItem.create",
    ]
    assert all(params["api_key"] == API_KEY for _, _, params in fake_stripe.calls)
    assert fake_stripe.items[first]["subscription"] == fake_stripe.items[second]["subscription"]
    assert fake_stripe.calls[3][2]["metadata"] == {"description": "Bot: Custom"}

    await billing.update_subscription_item(first, "price_standard_15s")
    assert fake_stripe.items[first]["price"] == "price_standard_15s"
    assert fake_stripe.calls[-1][1] == (first,)

    assert await billing.remove_subscription_item(first) is True
    assert first not in fake_stripe.items
    assert await billing.remove_subscription_item(first) is False

    with pytest.raises(BillingError):
        await billing.add_subscription_item("", "price_standard_60s", "Bot: Tracker")
    with pytest.raises(BillingError):
        await billing.update_subscription_item("si_missing", "price_standard_60s")


@pytest.mark.asyncio
async def test_stripe_errors_become_billing_errors(fake_stripe) -> None:
    billing = _stripe_billing(fake_stripe)
    fake_stripe.fail.add("Subscription.list")
    with pytest.raises(BillingError) as err:
        await billing.add_subscription_item("cus_1", "price_standard_60s", "Bot: Tracker")
    assert "Billing request failed" in str(err.value)
    with pytest.raises(BillingError):
        await billing.get_customer_subscription("cus_1")


@pytest.mark.asyncio
async def test_disabled_billing_skips_provider(fake_stripe) -> None:
    billing = BillingService(MemoryStorage(), None, client=fake_stripe)
    assert billing.enabled is False
    assert await billing.add_subscription_item("cus_1", "price_standard_60s", "Bot: Tracker") is None
    await billing.update_subscription_item("si_1", "price_standard_15s")
    assert await billing.remove_subscription_item("si_1") is False
    assert await billing.get_customer_subscription("cus_1") is None
    with pytest.raises(BillingError):
        await billing.create_billing_portal_session("cus_1", "http://localhost:5000/dashboard")
    assert fake_stripe.calls == []


@pytest.mark.asyncio
async def test_customers_and_sessions(fake_stripe) -> None:
    billing = _stripe_billing(fake_stripe)
    user = User(id=4, discord_id="d4", username="dana", email="dana@example.com")

    customer_id = await billing.create_customer(user)
    assert fake_stripe.customers[customer_id]["metadata"] == {"discord_id": "d4"}
    assert fake_stripe.customers[customer_id]["name"] == "dana"
    assert await billing.create_customer(User(id=5, discord_id="d5", username="eve")) is None

    assert await billing.get_customer_subscription(customer_id) is None
    item_id = await billing.add_subscription_item(customer_id, "price_standard_60s", "Bot: Tracker")
    sub = await billing.get_customer_subscription(customer_id)
    assert sub["status"] == "active"
    assert sub["items"]["data"][0]["id"] == item_id

    session = await billing.create_checkout_session(customer_id, "price_standard_60s", "https://a/ok", "https://a/no")
    _, _, params = fake_stripe.calls[-1]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_standard_60s", "quantity": 1}]
    assert params["payment_method_types"] == ["card"]
    assert (params["success_url"], params["cancel_url"]) == ("https://a/ok", "https://a/no")
    assert session["url"].startswith("https://checkout.stripe.test/")

    portal = await billing.create_billing_portal_session(customer_id, "https://a/dashboard")
    assert portal["url"] == f"https://billing.stripe.test/{customer_id}"
    assert fake_stripe.calls[-1][2]["return_url"] == "https://a/dashboard"


def test_construct_event(sign_webhook) -> None:
    billing = BillingService(MemoryStorage(), None, webhook_secret=SECRET)
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_failed"}).encode("utf-8")
    header = sign_webhook(payload, SECRET)
    assert billing.construct_event(payload, header)["id"] == "evt_1"

    with pytest.raises(BillingError):
        billing.construct_event(payload.replace(b"evt_1", b"evt_2"), header)
    with pytest.raises(BillingError):
        billing.construct_event(payload, sign_webhook(payload, SECRET, int(time.time()) - 301))
    with pytest.raises(BillingError):
        billing.construct_event(payload, sign_webhook(payload, "whsec_other"))
    with pytest.raises(BillingError):
        billing.construct_event(payload, "garbage")
    with pytest.raises(BillingError):
        billing.construct_event(payload, None)
    with pytest.raises(BillingError):
        BillingService(MemoryStorage(), None).construct_event(payload, header)

    with pytest.raises(ValidationError):
        billing.construct_event(b"not json", sign_webhook(b"not json", SECRET))
    with pytest.raises(ValidationError):
        billing.construct_event(b"[1]", sign_webhook(b"[1]", SECRET))


@pytest.mark.asyncio
async def test_subscription_deleted_pauses_active_bots() -> None:
    storage, scheduler, billing, user = await _setup()
    a = await storage.create_bot(user_id=user.id, name="A", type="standard", network="ethereum", guild_id="g")
    b = await storage.create_bot(user_id=user.id, name="B", type="standard", network="ethereum", guild_id="g")
    await scheduler.start(a.id)
    await scheduler.start(b.id)
    await scheduler.stop(b.id)

    handled = await billing.handle_event(_event("evt_del", "customer.subscription.deleted", status="canceled"))

    assert handled is True
    assert (await storage.get_user(user.id)).subscription_status == "inactive"
    assert (await storage.get_bot(a.id)).status == "paused"
    assert (await storage.get_bot(b.id)).status == "paused"
    assert scheduler.active_bot_ids() == []
    assert (await storage.get_billing_event("evt_del")).processed


@pytest.mark.asyncio
async def test_payment_events_and_duplicates() -> None:
    storage, scheduler, billing, user = await _setup()

    assert await billing.handle_event(_event("evt_fail", "invoice.payment_failed")) is True
    assert (await storage.get_user(user.id)).subscription_status == "past_due"

    assert await billing.handle_event(_event("evt_ok", "invoice.payment_succeeded", amount_paid=1500)) is True
    assert (await storage.get_user(user.id)).subscription_status == "active"
    assert (await storage.get_platform_stats()).revenue == 1500

    assert await billing.handle_event(_event("evt_ok", "invoice.payment_succeeded", amount_paid=1500)) is False
    assert (await storage.get_platform_stats()).revenue == 1500

    await billing.handle_event(_event("evt_upd", "customer.subscription.updated", status="canceled"))
    assert (await storage.get_user(user.id)).subscription_status == "canceled"

    # unknown customers are recorded and acknowledged
    assert await billing.handle_event(_event("evt_x", "invoice.payment_failed", customer="cus_other")) is True

    with pytest.raises(BillingError):
        await billing.handle_event({"type": "invoice.payment_failed"})
