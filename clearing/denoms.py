"""
Clearing - Denominations.

Display helpers for on-chain amounts. Known denominations come
from a static table; anything else renders as a generic
uppercase symbol with 6 decimals. Never raises on an unknown
denom.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Dict, Union


DEFAULT_DECIMALS = 6


@dataclass(frozen=True)
class DenomInfo:
    """Display metadata of a base denomination."""

    denom: str
    symbol: str
    decimals: int = DEFAULT_DECIMALS


KNOWN_DENOMS: Dict[str, DenomInfo] = {
    "uatom": DenomInfo("uatom", "ATOM"),
    "uosmo": DenomInfo("uosmo", "OSMO"),
    "uion": DenomInfo("uion", "ION"),
    "untrn": DenomInfo("untrn", "NTRN"),
    "ustars": DenomInfo("ustars", "STARS"),
    "uakt": DenomInfo("uakt", "AKT"),
    "ujuno": DenomInfo("ujuno", "JUNO"),
    "inj": DenomInfo("inj", "INJ", 18),
}


def get_denom_info(denom: str) -> DenomInfo:
    """Look up a denomination, falling back to a generic rendering."""
    known = KNOWN_DENOMS.get(denom)
    if known is not None:
        return known

    base = denom.strip()
    if base.startswith("ibc/"):
        symbol = "IBC/" + base[4:10].upper()
    elif len(base) > 1 and base.startswith("u"):
        symbol = base[1:].upper()
    else:
        symbol = base.upper() or "UNKNOWN"
    return DenomInfo(denom, symbol)


def to_display(amount: Union[int, str], denom: str) -> Decimal:
    """Base units to display units."""
    info = get_denom_info(denom)
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        value = Decimal(0)
    return value.scaleb(-info.decimals)


def format_amount(amount: Union[int, str], denom: str, precision: int = 6) -> str:
    """
    Render a base-unit amount for display.

    Example:
        format_amount(1105000, "uosmo") -> "1.105 OSMO"
    """
    info = get_denom_info(denom)
    quantum = Decimal(1).scaleb(-min(precision, info.decimals))
    value = to_display(amount, denom).quantize(quantum, rounding=ROUND_DOWN)
    text = format(value.normalize(), "f")
    return f"{text} {info.symbol}"


def parse_amount(display_amount: Union[str, Decimal], denom: str) -> int:
    """
    Display units to base units, truncating below one base unit.

    Raises:
        ValueError: If display_amount is not a number
    """
    info = get_denom_info(denom)
    try:
        value = Decimal(str(display_amount))
    except InvalidOperation:
        raise ValueError(f"Not a number: {display_amount!r}")
    return int(value.scaleb(info.decimals).to_integral_value(rounding=ROUND_DOWN))


__all__ = [
    "DEFAULT_DECIMALS",
    "DenomInfo",
    "KNOWN_DENOMS",
    "get_denom_info",
    "to_display",
    "format_amount",
    "parse_amount",
]
