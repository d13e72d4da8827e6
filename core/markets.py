"""Market and collateral lookup tables.

Resolves a session token (`APT`, `apt`, `APT-PERP`, `APT/USDC` ...) to the
venue market id and size precision, and a collateral symbol to its on-chain
address and decimals. Both tables come from config.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

_SUFFIXES = ("-PERP", "PERP", "-USDC", "-USDT", "-USD", "/USDC", "/USDT", "/USD")

DEFAULT_MARKETS: Dict[str, Dict[str, int]] = {
    "APT": {"market_id": 14, "size_decimals": 3},
    "BTC": {"market_id": 15, "size_decimals": 5},
}

DEFAULT_COLLATERAL: Dict[str, Dict[str, Any]] = {
    "USDC": {"address": "", "decimals": 6},
    "USDT": {"address": "", "decimals": 6},
}


def canonical_token(token: Optional[str]) -> str:
    """Return the bare base ticker (e.g., `apt-perp` -> `APT`)."""

    if not token:
        return ""
    ticker = token.strip().upper()
    for suffix in _SUFFIXES:
        if ticker.endswith(suffix) and len(ticker) > len(suffix):
            return ticker[: -len(suffix)]
    return ticker


@dataclass(frozen=True)
class MarketSpec:
    token: str
    market_id: int
    size_decimals: int


@dataclass(frozen=True)
class CollateralSpec:
    symbol: str
    address: str
    decimals: int = 6


class MarketTable:
    """Static token -> market and symbol -> collateral lookups."""

    def __init__(self, markets: Optional[Mapping[str, Mapping[str, Any]]] = None,
                 collateral: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._markets: Dict[str, MarketSpec] = {}
        for token, raw in (markets if markets is not None else DEFAULT_MARKETS).items():
            key = canonical_token(token)
            self._markets[key] = MarketSpec(
                token=key,
                market_id=int(raw["market_id"]),
                size_decimals=int(raw["size_decimals"]),
            )
        self._collateral: Dict[str, CollateralSpec] = {}
        for symbol, raw in (collateral if collateral is not None else DEFAULT_COLLATERAL).items():
            key = symbol.strip().upper()
            self._collateral[key] = CollateralSpec(
                symbol=key,
                address=str(raw.get("address") or ""),
                decimals=int(raw.get("decimals", 6)),
            )

    def market(self, token: str) -> Optional[MarketSpec]:
        return self._markets.get(canonical_token(token))

    def collateral(self, symbol: str) -> Optional[CollateralSpec]:
        return self._collateral.get((symbol or "").strip().upper())

    def tokens(self):
        return sorted(self._markets)

    def __contains__(self, token: str) -> bool:
        return canonical_token(token) in self._markets
