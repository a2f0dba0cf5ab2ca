from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Mapping, Optional, Union

from pulsebot import config

_FRACTION = Decimal("0.001")
_CENTS = Decimal("0.01")


def config_decimals(configuration: Optional[Mapping[str, Any]], key: str = "decimals") -> int:
    """Decimals from a bot configuration; missing or null means the 18 default."""
    if not configuration:
        return config.DEFAULT_DECIMALS
    raw = configuration.get(key)
    if raw is None or raw == "":
        return config.DEFAULT_DECIMALS
    return int(raw)


def format_units(raw: Union[str, int], decimals: int) -> str:
    """Scale an on-chain integer by 10^decimals and group thousands.

    At most three fraction digits are shown, trailing zeros dropped:
    ``format_units("1000000000000000000000", 18) == "1,000"``.
    """
    with localcontext() as ctx:
        ctx.prec = 120
        value = Decimal(int(raw)).scaleb(-int(decimals))
        q = value.quantize(_FRACTION, rounding=ROUND_HALF_UP)
        text = f"{q:,f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_price(price: Union[Decimal, float, int]) -> str:
    with localcontext() as ctx:
        ctx.prec = 120
        q = Decimal(str(price)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{q:f}"


def render_template(template: str, result: str) -> str:
    # Literal substitution only; the template is never evaluated.
    return str(template).replace("{result}", str(result))
