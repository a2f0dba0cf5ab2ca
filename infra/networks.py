from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from pulsebot import config


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    display_name: str
    chain_id: Optional[int]
    rpc_urls: List[str]


def normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def url_host(url: str) -> str:
    u = normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    # Accept comma or newline separated lists.
    parts: List[str] = []
    for chunk in str(raw).replace("\n", ",").split(","):
        u = normalize_url(chunk)
        if u:
            parts.append(u)
    return parts


def _dedupe(urls: List[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for u in urls:
        if u in seen:
            continue
        seen.add(u)
        out.append(u)
    return out


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None
    return data if isinstance(data, dict) else None


def load_networks(path: Optional[str] = None) -> Dict[str, NetworkConfig]:
    """Build the network table.

    Order of precedence for a network's endpoint list:
      1) env RPC_URLS_<NETWORK> (comma/newline list)
      2) "rpc_urls" for that network in the JSON file at `path`
      3) pulsebot.config.NETWORKS
    The JSON file may also add networks not present in the defaults.
    """

    overrides: Dict[str, Any] = {}
    if path:
        overrides = _read_json(Path(path)) or {}

    raw: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in config.NETWORKS.items()}
    for name, entry in overrides.items():
        if not isinstance(entry, dict):
            continue
        key = str(name).strip().lower()
        raw.setdefault(key, {}).update(entry)

    out: Dict[str, NetworkConfig] = {}
    for name, entry in raw.items():
        urls = split_urls(os.getenv(f"RPC_URLS_{name.upper()}"))
        if not urls:
            urls = [normalize_url(u) for u in (entry.get("rpc_urls") or []) if str(u).strip()]
        urls = _dedupe(urls)
        if not urls:
            continue
        chain_id = entry.get("chain_id")
        try:
            chain_id = int(chain_id) if chain_id is not None else None
        except (TypeError, ValueError):
            chain_id = None
        out[name] = NetworkConfig(
            name=name,
            display_name=str(entry.get("display_name") or name),
            chain_id=chain_id,
            rpc_urls=urls,
        )
    return out
