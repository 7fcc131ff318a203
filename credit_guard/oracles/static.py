"""Fixed-price oracle used for offline runs and simulations."""
from __future__ import annotations

from typing import Mapping


class StaticPriceOracle:
    def __init__(self, prices: Mapping[str, float] | None = None) -> None:
        self._prices: dict[str, float] = dict(prices or {})

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        return {s: self._prices[s] for s in symbols if s in self._prices}
