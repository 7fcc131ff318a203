"""Pyth Network price oracle (Hermes REST API)."""
from __future__ import annotations

import asyncio
import logging
import ssl
import time

import aiohttp
import certifi

from ..config import PythConfig
from ..errors import CollaboratorError

logger = logging.getLogger(__name__)


class PythOracle:
    """Fetch USD prices for configured symbols from Pyth Hermes.

    Symbols without a configured feed, missing from the response, non-positive
    or older than ``max_price_age_seconds`` are left out of the result.
    Transport and HTTP failures raise :class:`CollaboratorError`.
    """

    def __init__(self, config: PythConfig) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout_seconds = config.timeout_seconds
        self.max_price_age_seconds = config.max_price_age_seconds

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        prices: dict[str, float] = {}

        feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}
        missing = sorted(set(symbols) - set(feeds))
        if missing:
            logger.debug("No Pyth feed configured for %s", ", ".join(missing))

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        raise CollaboratorError(
                            "pyth",
                            f"HTTP {response.status}",
                            retryable=response.status >= 500 or response.status == 429,
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            raise CollaboratorError("pyth", str(e) or type(e).__name__) from e

        id_to_symbols: dict[str, list[str]] = {}
        for symbol, feed_id in feeds.items():
            id_to_symbols.setdefault(feed_id.lower().removeprefix("0x"), []).append(symbol)

        now = time.time()
        for item in data.get("parsed", []):
            feed_id = str(item.get("id", "")).lower().removeprefix("0x")
            price_data = item.get("price", {})
            try:
                price = int(price_data.get("price", 0)) * (10 ** int(price_data.get("expo", 0)))
            except (TypeError, ValueError):
                logger.warning("Malformed Pyth price for feed %s", feed_id)
                continue
            if price <= 0:
                continue

            publish_time = price_data.get("publish_time")
            if (
                self.max_price_age_seconds is not None
                and publish_time is not None
                and now - float(publish_time) > self.max_price_age_seconds
            ):
                logger.warning("Dropping stale Pyth price for feed %s", feed_id)
                continue

            for symbol in id_to_symbols.get(feed_id, []):
                prices[symbol] = price

        for symbol, price in sorted(prices.items()):
            logger.debug("Pyth %s: $%.4f", symbol, price)
        return prices
