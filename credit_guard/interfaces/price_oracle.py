"""Price oracle protocol: USD price feed abstraction."""
from typing import Protocol


class PriceOracle(Protocol):
    """Abstract interface for fetching asset prices in USD.

    Implementations return the subset of ``symbols`` they could price and
    never raise on a single missing symbol.
    """

    async def get_prices(self, symbols: list[str]) -> dict[str, float]: ...
