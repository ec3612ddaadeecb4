"""Symbol and position-side normalization shared by the engine and services."""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

# Perpetual contract symbols look like cmt_btcusdt
_SYMBOL_PATTERN = re.compile(r"^[a-z0-9]+_[a-z0-9]+$")

LONG = "LONG"
SHORT = "SHORT"

_SIDE_ALIASES = {
    "long": LONG,
    "buy": LONG,
    "open_long": LONG,
    "short": SHORT,
    "sell": SHORT,
    "open_short": SHORT,
}


@dataclass(frozen=True)
class SymbolSpec:
    """Normalized perpetual symbol split into venue prefix and pair."""

    prefix: str
    pair: str
    symbol: str

    @property
    def base(self) -> str:
        for quote in ("usdt", "usdc", "usd"):
            if self.pair.endswith(quote) and len(self.pair) > len(quote):
                return self.pair[: -len(quote)].upper()
        return self.pair.upper()


def normalize_symbol(raw: str) -> str:
    """
    Normalize a raw symbol string to the venue's lower-case prefix_pair format.

    Raises ValueError with actionable guidance when malformed.
    """
    if raw is None:
        raise ValueError("Symbol entry is required (e.g., cmt_btcusdt).")
    if not isinstance(raw, str):
        raise ValueError("Symbol entries must be strings like 'cmt_btcusdt'.")
    trimmed = raw.strip().lower()
    if not trimmed:
        raise ValueError("Symbol entries must not be empty.")
    if not _SYMBOL_PATTERN.match(trimmed):
        raise ValueError(
            f"Symbol '{raw}' must use PREFIX_PAIR format (e.g., cmt_btcusdt). "
            "Update APPROVED_SYMBOLS accordingly."
        )
    return trimmed


def parse_symbol(raw: str) -> SymbolSpec:
    symbol = normalize_symbol(raw)
    prefix, pair = symbol.split("_", 1)
    return SymbolSpec(prefix=prefix, pair=pair, symbol=symbol)


def normalize_symbols(raw_symbols: str | Sequence[str]) -> List[str]:
    """
    Normalize and deduplicate a list or comma string of symbols.

    Empty/whitespace entries are ignored; invalid entries raise.
    """
    if isinstance(raw_symbols, str):
        raw_list = [token.strip() for token in raw_symbols.split(",")]
    else:
        raw_list = list(raw_symbols or [])

    normalized: List[str] = []
    seen = set()
    for raw in raw_list:
        if raw is None:
            continue
        if isinstance(raw, str) and not raw.strip():
            continue
        symbol = normalize_symbol(raw)
        if symbol in seen:
            continue
        seen.add(symbol)
        normalized.append(symbol)
    return normalized


def normalize_side(raw) -> Optional[str]:
    """
    Map vendor side spellings onto LONG/SHORT.

    Returns None for anything unrecognized so callers can drop the record.
    """
    if raw is None:
        return None
    token = str(raw).strip().lower()
    if not token:
        return None
    return _SIDE_ALIASES.get(token)


def position_key(symbol: str, side: str) -> Tuple[str, str]:
    """Key used to match a tracked trade against an exchange position."""
    return (symbol.strip().lower(), side)
