"""Collateral pricing shared by lending and underwriting."""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .. import risk
from ..config import AppConfig
from ..errors import CollaboratorError, ValidationError
from ..interfaces.price_oracle import PriceOracle
from ..models import CollateralAsset, CollateralOffer
from ..resilience import RetryPolicy, call_collaborator

logger = logging.getLogger(__name__)


async def fetch_prices(
    symbols: Iterable[str],
    oracle: PriceOracle | None,
    config: AppConfig,
    retry: RetryPolicy | None = None,
) -> dict[str, float]:
    """Oracle prices, falling back to each asset's reference price.

    Symbols priced by neither source are absent from the result.
    """
    wanted = sorted(set(symbols))
    prices: dict[str, float] = {}
    if oracle is not None and wanted:
        try:
            prices = await call_collaborator(
                "price_oracle", lambda: oracle.get_prices(wanted), retry
            )
        except CollaboratorError as e:
            logger.warning("Price oracle unavailable, using reference prices: %s", e)
            prices = {}

    resolved: dict[str, float] = {}
    for symbol in wanted:
        price = prices.get(symbol)
        if price is None or price <= 0:
            price = config.asset_profile(symbol).reference_price
        if price is not None and price > 0:
            resolved[symbol] = price
    return resolved


def validate_offers(offers: Sequence[CollateralOffer]) -> None:
    if not offers:
        raise ValidationError("At least one collateral asset is required")
    for offer in offers:
        if not offer.asset:
            raise ValidationError("Collateral asset symbol is required")
        if offer.amount <= 0:
            raise ValidationError(f"Collateral amount for {offer.asset} must be positive")


def build_assets(
    offers: Sequence[CollateralOffer],
    prices: dict[str, float],
    config: AppConfig,
) -> tuple[CollateralAsset, ...]:
    """Priced, weighted collateral assets; repeated symbols are merged."""
    amounts: dict[str, float] = {}
    for offer in offers:
        amounts[offer.asset] = amounts.get(offer.asset, 0.0) + offer.amount

    unpriced = sorted(s for s in amounts if s not in prices)
    if unpriced:
        raise ValidationError(f"No price available for {', '.join(unpriced)}")

    assets = [
        CollateralAsset(
            symbol=symbol,
            amount=amount,
            price_usd=prices[symbol],
            value_usd=amount * prices[symbol],
            volatility=config.asset_profile(symbol).volatility,
        )
        for symbol, amount in amounts.items()
    ]
    return risk.reweight(assets)
