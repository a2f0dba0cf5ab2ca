# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import aiohttp
from eth_abi import encode
from eth_utils import keccak, to_checksum_address
from web3 import Web3

from infra.metrics import METRICS, Metrics
from infra.networks import NetworkConfig, normalize_url, url_host
from infra.pricing import ReservesPriceStrategy
from pulsebot import config
from pulsebot.errors import AllEndpointsFailed, RPCError, UnsupportedNetwork

log = logging.getLogger("infra.rpc")


def selector(signature: str) -> str:
    return keccak(text=signature)[:4].hex()


SEL_BALANCE_OF = selector("balanceOf(address)")  # 70a08231
SEL_TOTAL_SUPPLY = selector("totalSupply()")  # 18160ddd


def normalize_rpc_error(msg: Any) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "http_" in text:
        return "http_error"
    if "rpc_error" in text:
        return "rpc_error"
    if "decode" in text or "json" in text:
        return "decode_error"
    return "transport_error"


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC hex quantity / eth_call word as an unsigned integer."""
    if isinstance(value, int):
        return int(value)
    text = str(value or "").strip()
    if text in ("", "0x", "0X"):
        raise ValueError("empty hex result")
    return int(text, 16)


class Transport(Protocol):
    async def call(self, url: str, method: str, params: list, *, timeout_s: float) -> Any: ...


class JsonRpcTransport:
    """One JSON-RPC POST per call over a persistent aiohttp session.

    Every failure mode (timeout, connection error, HTTP status, JSON-RPC error
    object, undecodable body) is raised as RPCError so the caller can fail over.
    """

    def __init__(self, *, metrics: Optional[Metrics] = None) -> None:
        self.metrics = metrics or METRICS
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        # Limit total sockets to avoid flooding public RPCs.
        connector = aiohttp.TCPConnector(limit=50, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(self, url: str, method: str, params: list, *, timeout_s: float) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        host = url_host(url)
        t0 = time.perf_counter()
        self.metrics.inc("rpc_requests_total")
        self.metrics.inc("rpc_requests_by_endpoint", label=host)

        async def _do() -> Any:
            async with session.post(url, json=payload) as resp:
                if resp.status >= 400:
                    raise RPCError(f"http_{resp.status}", url=url)
                return await resp.json(content_type=None)

        try:
            data = await asyncio.wait_for(_do(), timeout=float(timeout_s))
        except asyncio.TimeoutError as exc:
            raise RPCError(f"timeout({timeout_s}s)", url=url) from exc
        except aiohttp.ClientError as exc:
            raise RPCError(f"{type(exc).__name__}: {exc}", url=url) from exc
        except ValueError as exc:
            raise RPCError(f"json decode: {exc}", url=url) from exc
        finally:
            self.metrics.observe("rpc_latency_ms", (time.perf_counter() - t0) * 1000.0)

        if not isinstance(data, dict):
            raise RPCError("json decode: response is not an object", url=url)
        if data.get("error"):
            err = data["error"]
            msg = err.get("message") if isinstance(err, dict) else err
            raise RPCError(f"rpc_error: {msg}", url=url)
        if "result" not in data:
            raise RPCError("json decode: missing result", url=url)
        return data["result"]


class EndpointPool:
    """Ordered endpoint list for one network with a failover cursor.

    The cursor is the index tried first by the next call. It only moves when an
    attempt fails, and always stays within range.
    """

    def __init__(self, network: str, urls: Sequence[str]) -> None:
        cleaned = [normalize_url(u) for u in (urls or []) if str(u).strip()]
        if not cleaned:
            raise ValueError(f"EndpointPool for {network} requires at least one url")
        self.network = str(network)
        self.urls: List[str] = cleaned
        self.cursor = 0

    def __len__(self) -> int:
        return len(self.urls)

    def mark_failed(self, idx: int) -> None:
        self.cursor = (int(idx) + 1) % len(self.urls)

    def snapshot(self) -> Dict[str, Any]:
        return {"network": self.network, "urls": list(self.urls), "cursor": self.cursor}


class BlockchainClient:
    def __init__(
        self,
        networks: Mapping[str, NetworkConfig],
        *,
        transport: Optional[Transport] = None,
        stats: Any = None,
        price_strategy: Any = None,
        timeout_s: Optional[float] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.metrics = metrics or METRICS
        self.transport = transport if transport is not None else JsonRpcTransport(metrics=self.metrics)
        self.stats = stats
        self.timeout_s = float(timeout_s if timeout_s is not None else config.RPC_TIMEOUT_S)
        self.pools: Dict[str, EndpointPool] = {
            name: EndpointPool(name, net.rpc_urls) for name, net in networks.items()
        }
        self.price_strategy = price_strategy if price_strategy is not None else ReservesPriceStrategy()

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    def pool(self, network: str) -> EndpointPool:
        pool = self.pools.get(str(network))
        if pool is None:
            raise UnsupportedNetwork(network)
        return pool

    async def call(self, network: str, method: str, params: list) -> Any:
        pool = self.pool(network)
        start = pool.cursor
        n = len(pool)
        last_err: Optional[BaseException] = None

        for attempt in range(n):
            idx = (start + attempt) % n
            url = pool.urls[idx]
            if self.stats is not None:
                await self.stats.record_rpc_call()
            try:
                return await self.transport.call(url, method, params, timeout_s=self.timeout_s)
            except Exception as exc:
                last_err = exc
                reason = normalize_rpc_error(exc)
                self.metrics.inc("rpc_fail_by_reason", label=reason)
                self.metrics.inc("rpc_fail_by_endpoint", label=url_host(url))
                pool.mark_failed(idx)
                if attempt + 1 < n:
                    self.metrics.inc("rpc_failovers_total")
                log.warning("RPC %s failed on %s via %s: %s", method, network, url, exc)

        raise AllEndpointsFailed(network, n, last_err)

    async def eth_call(self, network: str, to: str, data: str, block: str = "latest") -> str:
        return await self.call(network, "eth_call", [{"to": to, "data": data}, block])

    async def get_eth_balance(self, network: str, address: str) -> str:
        res = await self.call(network, "eth_getBalance", [address, "latest"])
        return str(parse_quantity(res))

    async def get_token_balance(self, network: str, token_address: str, wallet_address: str) -> str:
        self.pool(network)
        # balanceOf(address): selector + 32-byte left-padded address
        data = "0x" + SEL_BALANCE_OF + encode(["address"], [to_checksum_address(wallet_address)]).hex()
        res = await self.eth_call(network, token_address, data)
        return str(parse_quantity(res))

    async def get_token_supply(self, network: str, token_address: str) -> str:
        res = await self.eth_call(network, token_address, "0x" + SEL_TOTAL_SUPPLY)
        return str(parse_quantity(res))

    async def get_gas_price(self, network: str) -> str:
        res = await self.call(network, "eth_gasPrice", [])
        return str(parse_quantity(res))

    async def get_block_number(self, network: str) -> int:
        res = await self.call(network, "eth_blockNumber", [])
        return parse_quantity(res)

    async def call_contract_function(
        self,
        network: str,
        contract_address: str,
        function_selector: str,
        args: Optional[list] = None,
    ) -> str:
        # Only the raw selector is sent; `args` are accepted for interface
        # compatibility but not ABI-encoded.
        sel = str(function_selector).strip()
        if sel.lower().startswith("0x"):
            sel = sel[2:]
        res = await self.eth_call(network, contract_address, "0x" + sel)
        return str(res)

    async def get_pair_price(self, network: str, pair_address: str, options: Optional[Mapping[str, Any]] = None):
        return await self.price_strategy.price(self, network, pair_address, dict(options or {}))

    def cursors(self) -> Dict[str, int]:
        return {name: pool.cursor for name, pool in self.pools.items()}


# ------------------------
# Synchronous endpoint probe for the --check-endpoints CLI

def probe_endpoints(urls: Sequence[str], *, timeout_s: float = 5.0) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for url in urls:
        entry: Dict[str, Any] = {"url": url, "connected": False, "block": None, "error": None}
        provider = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": float(timeout_s)}))
        try:
            if provider.is_connected():
                entry["connected"] = True
                entry["block"] = int(provider.eth.block_number)
        except Exception as e:
            entry["error"] = str(e)
        out.append(entry)
    return out
