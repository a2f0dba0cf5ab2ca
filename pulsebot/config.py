# pulsebot/config.py
# NOTE:
# Do not hardcode the encryption key or billing secrets in the repo. Provide them
# via env vars (ENCRYPTION_KEY, STRIPE_SECRET_KEY, BILLING_WEBHOOK_SECRET) or the
# settings file.

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

# Networks served by the RPC client. Endpoint order is failover order.
NETWORKS: Dict[str, Dict[str, Any]] = {
    "ethereum": {
        "display_name": "Ethereum Mainnet",
        "chain_id": 1,
        "rpc_urls": [
            "https://ethereum.publicnode.com",
            "https://eth.llamarpc.com",
            "https://eth.rpc.blxrbdn.com",
        ],
    },
    "bsc": {
        "display_name": "Binance Smart Chain",
        "chain_id": 56,
        "rpc_urls": [
            "https://bsc-dataseed.binance.org",
            "https://bsc-dataseed1.defibit.io",
            "https://bsc-dataseed1.ninicoin.io",
        ],
    },
    "polygon": {
        "display_name": "Polygon Mainnet",
        "chain_id": 137,
        "rpc_urls": [
            "https://polygon-rpc.com",
            "https://rpc-mainnet.matic.network",
            "https://matic-mainnet.chainstacklabs.com",
        ],
    },
    "arbitrum": {
        "display_name": "Arbitrum One",
        "chain_id": 42161,
        "rpc_urls": [
            "https://arb1.arbitrum.io/rpc",
            "https://arbitrum.llamarpc.com",
            "https://arbitrum-one.public.blastapi.io",
        ],
    },
}

BOT_TYPES = ("standard", "alert_whale", "alert_buy", "custom_rpc")
BOT_STATUSES = ("configured", "active", "paused", "error")
UPDATE_FREQUENCIES = ("60", "30", "15")
METRIC_TYPES = ("price", "supply", "balance")
SUBSCRIPTION_STATUSES = ("active", "inactive", "past_due", "canceled")

# Billing price ids keyed by "<bot type>_<update frequency>".
PRICE_IDS: Dict[str, str] = {
    "standard_60": "price_standard_60s",
    "standard_30": "price_standard_30s",
    "standard_15": "price_standard_15s",
    "alert_whale_60": "price_alert_60s",
    "alert_whale_30": "price_alert_30s",
    "alert_whale_15": "price_alert_15s",
    "alert_buy_60": "price_alert_60s",
    "alert_buy_30": "price_alert_30s",
    "alert_buy_15": "price_alert_15s",
    "custom_rpc_60": "price_custom_60s",
    "custom_rpc_30": "price_custom_30s",
    "custom_rpc_15": "price_custom_15s",
}

# Delay before the first tick of a freshly started bot (independent of its interval).
FIRST_TICK_DELAY_S = 0.1

# Per-attempt JSON-RPC timeout (seconds). One logical call makes at most one attempt per endpoint.
RPC_TIMEOUT_S = 8.0

MAX_BOTS_PER_USER = 5

DEFAULT_DECIMALS = 18

DEFAULT_ENCRYPTION_KEY = "pulsebot-dev-key"


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 5000

    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    stripe_secret_key: str = ""
    billing_webhook_secret: str = ""
    # Base URL of the dashboard, used for billing portal and checkout redirects.
    public_base_url: str = "http://localhost:5000"

    # Scheduler
    first_tick_delay_s: float = FIRST_TICK_DELAY_S

    # RPC
    rpc_timeout_s: float = RPC_TIMEOUT_S
    networks_path: Optional[str] = None
    # When set, standard/price bots report this constant instead of reading pair reserves.
    fixed_pair_price: Optional[float] = None

    # Limits
    max_bots_per_user: int = MAX_BOTS_PER_USER

    # Notifications: "none" keeps values in storage only, "discord" posts to the bot's channel.
    notify_mode: str = "none"
    discord_api_base: str = "https://discord.com/api/v10"

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None


def load_settings(path: Optional[str] = None) -> Settings:
    path = path or os.getenv("PULSEBOT_CONFIG", "pulsebot_config.json")
    s = Settings()
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                raw = loaded
        except Exception:
            raw = {}

    known = {f.name for f in fields(s)}
    for k, v in raw.items():
        if k not in known:
            continue
        try:
            setattr(s, k, _coerce(getattr(s, k), v))
        except Exception:
            pass

    env_key = os.getenv("ENCRYPTION_KEY")
    if env_key:
        s.encryption_key = env_key
    env_stripe = os.getenv("STRIPE_SECRET_KEY")
    if env_stripe:
        s.stripe_secret_key = env_stripe
    env_secret = os.getenv("BILLING_WEBHOOK_SECRET") or os.getenv("STRIPE_WEBHOOK_SECRET")
    if env_secret:
        s.billing_webhook_secret = env_secret
    env_host = os.getenv("HOST")
    if env_host:
        s.host = env_host.strip()
    env_base = os.getenv("PUBLIC_BASE_URL")
    if env_base:
        s.public_base_url = env_base.strip().rstrip("/")
    env_port = os.getenv("PORT")
    if env_port:
        try:
            s.port = int(env_port)
        except ValueError:
            pass
    return s


def _coerce(current: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    return value


def price_id_key(bot_type: str, update_frequency: str) -> str:
    return f"{bot_type}_{update_frequency}"
