from __future__ import annotations

from decimal import Decimal, localcontext
from typing import Any, Dict, Protocol

from eth_abi import decode
from eth_utils import keccak

from pulsebot.formatting import config_decimals


def _selector(sig: str) -> str:
    return keccak(text=sig)[:4].hex()


SEL_GET_RESERVES = _selector("getReserves()")  # 0902f1ac


class PairPriceStrategy(Protocol):
    async def price(self, client: Any, network: str, pair_address: str, options: Dict[str, Any]) -> Decimal: ...


class ReservesPriceStrategy:
    """Uniswap V2-style spot price from pair reserves.

    Returns token1 per token0 (reserve1 / reserve0, each scaled by its
    decimals). Options: token0_decimals, token1_decimals (default 18) and
    invert_price to quote token0 per token1 instead.
    """

    async def price(self, client: Any, network: str, pair_address: str, options: Dict[str, Any]) -> Decimal:
        raw = await client.eth_call(network, pair_address, "0x" + SEL_GET_RESERVES)
        text = str(raw or "")
        blob = bytes.fromhex(text[2:] if text.startswith("0x") else text)
        r0, r1, _ts = decode(["uint112", "uint112", "uint32"], blob)
        if int(r0) <= 0 or int(r1) <= 0:
            raise ValueError(f"pair {pair_address} has empty reserves")

        d0 = config_decimals(options, "token0_decimals")
        d1 = config_decimals(options, "token1_decimals")
        with localcontext() as ctx:
            ctx.prec = 60
            amount0 = Decimal(int(r0)).scaleb(-d0)
            amount1 = Decimal(int(r1)).scaleb(-d1)
            if options.get("invert_price"):
                return amount0 / amount1
            return amount1 / amount0


class FixedPriceStrategy:
    """Constant price; placeholder for deployments without a price source."""

    def __init__(self, value: Any) -> None:
        self.value = Decimal(str(value))

    async def price(self, client: Any, network: str, pair_address: str, options: Dict[str, Any]) -> Decimal:
        return self.value
