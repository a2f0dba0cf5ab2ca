# pulsebot/server.py

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from aiohttp import web

from infra.metrics import METRICS
from infra.networks import load_networks
from infra.pricing import FixedPriceStrategy, ReservesPriceStrategy
from infra.rpc import BlockchainClient, JsonRpcTransport, probe_endpoints
from pulsebot.api import COMPONENTS, Components, build_app
from pulsebot.billing import BillingService
from pulsebot.config import Settings, load_settings
from pulsebot.logs import configure_logging
from pulsebot.notify import DiscordChannelNotifier, NullNotifier
from pulsebot.scheduler import BotScheduler
from pulsebot.stats import PlatformStatsRecorder
from pulsebot.storage import MemoryStorage
from pulsebot.vault import TokenVault

log = logging.getLogger("pulsebot.server")


def build_components(settings: Settings) -> Components:
    storage = MemoryStorage()
    stats = PlatformStatsRecorder(storage)
    networks = load_networks(settings.networks_path)
    if settings.fixed_pair_price is not None:
        price_strategy = FixedPriceStrategy(settings.fixed_pair_price)
    else:
        price_strategy = ReservesPriceStrategy()
    chain = BlockchainClient(
        networks,
        transport=JsonRpcTransport(metrics=METRICS),
        stats=stats,
        price_strategy=price_strategy,
        timeout_s=settings.rpc_timeout_s,
        metrics=METRICS,
    )
    vault = TokenVault(settings.encryption_key)
    if settings.notify_mode == "discord":
        notifier = DiscordChannelNotifier(vault, api_base=settings.discord_api_base)
    else:
        notifier = NullNotifier()
    scheduler = BotScheduler(
        storage,
        chain,
        notifier=notifier,
        first_tick_delay_s=settings.first_tick_delay_s,
        metrics=METRICS,
    )
    billing = BillingService(
        storage,
        scheduler,
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.billing_webhook_secret,
    )
    return Components(
        settings=settings,
        storage=storage,
        chain=chain,
        vault=vault,
        scheduler=scheduler,
        billing=billing,
        stats=stats,
        notifier=notifier,
        metrics=METRICS,
    )


async def _on_startup(app: web.Application) -> None:
    c = app[COMPONENTS]
    c.stats.start()
    await c.scheduler.resume_active()
    log.info("PulseBot started")


async def _on_cleanup(app: web.Application) -> None:
    c = app[COMPONENTS]
    await c.scheduler.shutdown()
    await c.stats.stop()
    await c.chain.close()
    await c.notifier.close()
    log.info("PulseBot stopped")


def create_app(settings: Optional[Settings] = None) -> web.Application:
    app = build_app(build_components(settings or load_settings()))
    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def check_endpoints(settings: Settings) -> int:
    failed = 0
    for name, net in load_networks(settings.networks_path).items():
        results = probe_endpoints(net.rpc_urls, timeout_s=settings.rpc_timeout_s)
        for entry in results:
            if not entry["connected"]:
                failed += 1
        print(json.dumps({"network": name, "chain_id": net.chain_id, "endpoints": results}, indent=2))
    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="PulseBot server")
    parser.add_argument("--config", type=str, default="", help="settings JSON path (optional)")
    parser.add_argument("--host", type=str, default="", help="bind host (overrides settings)")
    parser.add_argument("--port", type=int, default=0, help="bind port (overrides settings)")
    parser.add_argument("--log-dir", dest="log_dir", type=str, default="", help="write pulsebot.log here (optional)")
    parser.add_argument("--check-endpoints", dest="check_endpoints", action="store_true", help="probe RPC endpoints and exit")
    args = parser.parse_args()

    settings = load_settings(args.config or None)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = int(args.port)
    log_dir = args.log_dir or settings.log_dir
    configure_logging(Path(log_dir) if log_dir else None, settings.log_level)

    if args.check_endpoints:
        return check_endpoints(settings)

    # run_app installs SIGINT/SIGTERM handlers; cleanup hooks stop every timer.
    web.run_app(create_app(settings), host=settings.host, port=int(settings.port))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
