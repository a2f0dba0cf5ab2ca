from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import pydantic
from aiohttp import web

from infra.metrics import Metrics
from pulsebot.billing import BillingService
from pulsebot.config import Settings
from pulsebot.errors import (
    BillingError,
    BotNotFound,
    NotAuthorized,
    PulseBotError,
    ValidationError,
)
from pulsebot.models import Bot, BotCreate, BotUpdate, CheckoutRequest, User
from pulsebot.scheduler import BotScheduler
from pulsebot.stats import PlatformStatsRecorder
from pulsebot.storage import Storage
from pulsebot.vault import TokenVault

log = logging.getLogger("pulsebot.api")

USER_HEADER = "X-User-Id"
SIGNATURE_HEADER = "Stripe-Signature"

_DIGITS = re.compile(r"[0-9]+")

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


@dataclass
class Components:
    settings: Settings
    storage: Storage
    chain: Any
    vault: TokenVault
    scheduler: BotScheduler
    billing: BillingService
    stats: PlatformStatsRecorder
    notifier: Any
    metrics: Metrics


COMPONENTS = web.AppKey("components", Components)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(status: int, message: str, **extra: Any) -> web.Response:
    body: Dict[str, Any] = {"message": message}
    body.update(extra)
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BotNotFound:
        return _error(404, "Bot not found")
    except ValidationError as e:
        return _error(400, str(e), errors=e.errors)
    except BillingError as e:
        return _error(400, str(e))
    except NotAuthorized as e:
        return _error(403, str(e) or "Not authorized")
    except PulseBotError as e:
        log.error("%s %s failed: %s", request.method, request.path, e)
        return _error(500, "Request failed")
    except Exception:
        log.exception("%s %s failed", request.method, request.path)
        return _error(500, "Internal server error")


@web.middleware
async def identity_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    # Session/OAuth login is handled upstream; the caller's user id arrives in a header.
    if request.path.startswith("/api/"):
        raw = request.headers.get(USER_HEADER, "").strip()
        user: Optional[User] = None
        if _DIGITS.fullmatch(raw):
            user = await request.app[COMPONENTS].storage.get_user(int(raw))
        if user is None:
            return _error(401, "Authentication required")
        request["user"] = user
        if request.path.startswith("/api/admin/") and not user.is_admin:
            return _error(403, "Admin access required")
    return await handler(request)


async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be JSON") from exc


def _validated(model: Type[ModelT], raw: Any, message: str) -> ModelT:
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as e:
        errors = {".".join(str(p) for p in err["loc"]) or "body": err["msg"] for err in e.errors()}
        raise ValidationError(message, errors) from e


def _bot_id(request: web.Request) -> int:
    raw = request.match_info.get("bot_id", "")
    if not _DIGITS.fullmatch(raw):
        raise ValidationError("Invalid bot id")
    return int(raw)


async def _owned_bot(request: web.Request, action: str) -> Bot:
    c = request.app[COMPONENTS]
    bot_id = _bot_id(request)
    bot = await c.storage.get_bot(bot_id)
    if bot is None:
        raise BotNotFound(bot_id)
    user: User = request["user"]
    if bot.user_id != user.id and not user.is_admin:
        raise NotAuthorized(f"Not authorized to {action} this bot")
    return bot


# ------------------------
# Bots

async def list_bots(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bots = await c.storage.get_bots_by_user(request["user"].id)
    return web.json_response([b.to_dict() for b in bots])


async def create_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    user: User = request["user"]
    fields = _validated(BotCreate, await _json_body(request), "Invalid bot configuration").bot_fields()

    if not user.customer_id:
        raise BillingError("Subscription required to create bots")
    existing = await c.storage.get_bots_by_user(user.id)
    if len(existing) >= int(c.settings.max_bots_per_user):
        raise BillingError("Bot limit reached for current subscription")
    price_id = c.billing.price_id_for(fields["type"], fields["update_frequency"])
    if not price_id:
        raise ValidationError("Invalid bot configuration", {"update_frequency": "no price for this plan"})

    item_id = await c.billing.add_subscription_item(user.customer_id, price_id, f"Bot: {fields['name']}")
    bot: Optional[Bot] = None
    try:
        bot = await c.storage.create_bot(
            user_id=user.id,
            bot_token=c.vault.generate_bot_token(),
            subscription_item_id=item_id,
            **fields,
        )
        bot = await c.scheduler.start(bot.id)
    except Exception:
        # Nothing to bill for a bot that never came up.
        if bot is not None:
            await c.storage.delete_bot(bot.id)
        if item_id:
            await c.billing.remove_subscription_item(item_id)
        raise
    return web.json_response(bot.to_dict(), status=201)


async def get_bot(request: web.Request) -> web.Response:
    bot = await _owned_bot(request, "access")
    return web.json_response(bot.to_dict())


async def update_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot = await _owned_bot(request, "update")
    updates = _validated(BotUpdate, await _json_body(request), "Invalid bot update").updates()

    new_freq = updates.get("update_frequency")
    if new_freq and new_freq != bot.update_frequency:
        owner = await c.storage.get_user(bot.user_id)
        if owner is None or not owner.customer_id:
            raise BillingError("No subscription found")
        price_id = c.billing.price_id_for(bot.type, new_freq)
        if not price_id:
            raise ValidationError("Invalid update frequency")
        if bot.subscription_item_id:
            await c.billing.update_subscription_item(bot.subscription_item_id, price_id)

    updated = await c.storage.update_bot(bot.id, updates)
    if updated is None:
        raise BotNotFound(bot.id)
    # Running bots pick up the new interval/configuration with a fresh timer.
    if bot.status == "active":
        updated = await c.scheduler.restart(bot.id)
    return web.json_response(updated.to_dict())


async def delete_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot = await _owned_bot(request, "delete")
    if bot.subscription_item_id:
        await c.billing.remove_subscription_item(bot.subscription_item_id)
    await c.scheduler.delete(bot.id)
    return web.json_response({"message": "Bot deleted successfully"})


async def start_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot = await _owned_bot(request, "start")
    user: User = request["user"]
    if not user.is_admin and user.subscription_status != "active":
        raise BillingError("Active subscription required to start bot")
    started = await c.scheduler.start(bot.id)
    return web.json_response(started.to_dict())


async def stop_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot = await _owned_bot(request, "stop")
    stopped = await c.scheduler.stop(bot.id)
    return web.json_response(stopped.to_dict())


async def restart_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot = await _owned_bot(request, "restart")
    restarted = await c.scheduler.restart(bot.id)
    return web.json_response(restarted.to_dict())


# ------------------------
# User / subscription

async def user_profile(request: web.Request) -> web.Response:
    return web.json_response(request["user"].to_dict())


async def user_subscription(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    user: User = request["user"]
    if not user.customer_id:
        return web.json_response({"status": "inactive", "details": None})
    try:
        subscription = await c.billing.get_customer_subscription(user.customer_id)
    except BillingError:
        return _error(500, "Failed to fetch subscription details")
    return web.json_response({"status": user.subscription_status, "details": subscription})


async def user_billing_portal(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    user: User = request["user"]
    if not user.customer_id:
        return _error(400, "No customer record found")
    return_url = f"{c.settings.public_base_url}/dashboard"
    try:
        session = await c.billing.create_billing_portal_session(user.customer_id, return_url)
    except BillingError:
        return _error(500, "Failed to generate billing portal URL")
    return web.json_response({"url": session["url"]})


async def user_checkout(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    user: User = request["user"]
    plan = _validated(CheckoutRequest, await _json_body(request), "Invalid checkout request")
    price_id = c.billing.price_id_for(plan.bot_type, plan.update_frequency)
    if not price_id:
        raise ValidationError("Invalid checkout request", {"update_frequency": "no price for this plan"})

    customer_id = user.customer_id
    if not customer_id:
        customer_id = await c.billing.create_customer(user)
        if not customer_id:
            raise BillingError("An email address is required to subscribe")
        await c.storage.update_user(user.id, {"customer_id": customer_id})

    base = c.settings.public_base_url
    session = await c.billing.create_checkout_session(
        customer_id,
        price_id,
        success_url=f"{base}/dashboard?checkout=success",
        cancel_url=f"{base}/dashboard?checkout=cancel",
    )
    return web.json_response({"url": session["url"]})


# ------------------------
# Admin

async def admin_stats(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    stats = await c.storage.get_platform_stats()
    out = stats.to_dict()
    out["running_timers"] = len(c.scheduler.active_bot_ids())
    cursors = getattr(c.chain, "cursors", None)
    out["rpc_cursors"] = cursors() if cursors else {}
    out["metrics"] = c.metrics.snapshot()
    return web.json_response(out)


async def admin_bots(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    return web.json_response([b.to_dict() for b in await c.storage.list_bots()])


async def admin_users(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    return web.json_response([u.to_dict() for u in await c.storage.list_users()])


async def admin_manage_bot(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    bot_id = _bot_id(request)
    if await c.storage.get_bot(bot_id) is None:
        raise BotNotFound(bot_id)
    body = await _json_body(request)
    action = body.get("action") if isinstance(body, dict) else None
    actions = {"start": c.scheduler.start, "stop": c.scheduler.stop, "restart": c.scheduler.restart}
    if action not in actions:
        raise ValidationError("Invalid action")
    result = await actions[action](bot_id)
    return web.json_response(result.to_dict())


# ------------------------
# Billing webhook / health

async def billing_webhook(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    payload = await request.read()
    event = c.billing.construct_event(payload, request.headers.get(SIGNATURE_HEADER))
    handled = await c.billing.handle_event(event)
    return web.json_response({"received": True, "duplicate": not handled})


async def healthz(request: web.Request) -> web.Response:
    c = request.app[COMPONENTS]
    return web.json_response({"ok": True, "running_timers": len(c.scheduler.active_bot_ids())})


def build_app(components: Components) -> web.Application:
    app = web.Application(middlewares=[error_middleware, identity_middleware])
    app[COMPONENTS] = components
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/api/user/profile", user_profile)
    app.router.add_get("/api/user/subscription", user_subscription)
    app.router.add_get("/api/user/billing-portal", user_billing_portal)
    app.router.add_post("/api/user/checkout", user_checkout)
    app.router.add_get("/api/bots", list_bots)
    app.router.add_post("/api/bots", create_bot)
    app.router.add_get("/api/bots/{bot_id}", get_bot)
    app.router.add_put("/api/bots/{bot_id}", update_bot)
    app.router.add_delete("/api/bots/{bot_id}", delete_bot)
    app.router.add_post("/api/bots/{bot_id}/start", start_bot)
    app.router.add_post("/api/bots/{bot_id}/stop", stop_bot)
    app.router.add_post("/api/bots/{bot_id}/restart", restart_bot)
    app.router.add_get("/api/admin/stats", admin_stats)
    app.router.add_get("/api/admin/bots", admin_bots)
    app.router.add_get("/api/admin/users", admin_users)
    app.router.add_post("/api/admin/bots/{bot_id}/manage", admin_manage_bot)
    app.router.add_post("/webhooks/billing", billing_webhook)
    return app
