"""Risk primitives. Pure and deterministic.

Monitoring and underwriting both build on these, so a given LTV, volatility
or price shock always produces the same numbers regardless of caller.
"""
from __future__ import annotations

import math
from dataclasses import replace
from typing import Iterable, Mapping, Sequence

from .models import (
    CollateralAsset,
    LTVThresholds,
    PositionMetrics,
    PositionStatus,
    StressScenario,
    StressTestResult,
    VolatilityForecast,
)

# One-sided 99% normal quantile used for value at risk.
VAR_99_Z = 2.33

# Half-width of the volatility forecast band, relative to the estimate.
FORECAST_BAND = 0.3

# Inclusive upper bounds for volatility regimes.
VOLATILITY_REGIMES: tuple[tuple[float, str], ...] = (
    (0.02, "low"),
    (0.05, "normal"),
    (0.10, "high"),
)

_STATUS_RANK = {
    PositionStatus.HEALTHY: 0,
    PositionStatus.WARNING: 1,
    PositionStatus.CRITICAL: 2,
    PositionStatus.LIQUIDATING: 3,
    PositionStatus.LIQUIDATED: 4,
}

# Abramowitz & Stegun 7.1.26 coefficients.
_AS_P = 0.3275911
_AS_A = (0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429)


# ---------------------------------------------------------------------------
# Ratios
# ---------------------------------------------------------------------------


def loan_to_value(debt_value: float, collateral_value: float) -> float:
    """Debt divided by collateral; infinite when debt is backed by nothing."""
    if collateral_value <= 0:
        return math.inf if debt_value > 0 else 0.0
    return max(0.0, debt_value / collateral_value)


def health_factor(ltv: float, liquidation_threshold: float) -> float:
    """``liquidation_threshold / ltv``; ``inf`` for a debt-free position."""
    if ltv <= 0:
        return math.inf
    return liquidation_threshold / ltv


def liquidation_distance(ltv: float, liquidation_threshold: float) -> float:
    """Relative LTV headroom before liquidation."""
    if ltv <= 0:
        return math.inf
    return (liquidation_threshold - ltv) / ltv


def diversification(weights: Iterable[float]) -> float:
    """Herfindahl complement: 0 for one asset, towards 1 when spread evenly."""
    hhi = sum(w * w for w in weights)
    if hhi == 0:
        return 0.0
    return max(0.0, 1.0 - hhi)


def position_status(ltv: float, thresholds: LTVThresholds) -> PositionStatus:
    """Map an LTV onto the position status ladder."""
    if ltv >= thresholds.liquidation:
        return PositionStatus.LIQUIDATING
    if ltv >= thresholds.margin_call:
        return PositionStatus.CRITICAL
    if ltv >= thresholds.safe_zone:
        return PositionStatus.WARNING
    return PositionStatus.HEALTHY


def status_severity(status: PositionStatus) -> int:
    return _STATUS_RANK[status]


# ---------------------------------------------------------------------------
# Probability
# ---------------------------------------------------------------------------


def normal_cdf(x: float) -> float:
    """Standard normal CDF (absolute error below 1.5e-7)."""
    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + _AS_P * z)
    a1, a2, a3, a4, a5 = _AS_A
    poly = ((((a5 * t + a4) * t + a3) * t + a2) * t + a1) * t
    erf = 1.0 - poly * math.exp(-z * z)
    return 0.5 * (1.0 + sign * erf)


def liquidation_probability(
    ltv: float,
    volatility: float,
    horizon_days: float,
    liquidation_threshold: float,
) -> float:
    """Probability that LTV reaches the liquidation threshold within the horizon.

    Uses ``z = (threshold - ltv) / (volatility * sqrt(horizon))`` and returns
    ``1 - Phi(z)`` clamped to [0, 1]. With no volatility the answer is a step.
    """
    if volatility <= 0 or horizon_days <= 0 or math.isinf(ltv):
        return 1.0 if ltv >= liquidation_threshold else 0.0
    z = (liquidation_threshold - ltv) / (volatility * math.sqrt(horizon_days))
    return min(1.0, max(0.0, 1.0 - normal_cdf(z)))


# ---------------------------------------------------------------------------
# Stress testing
# ---------------------------------------------------------------------------


def stress_test(
    collateral_value: float,
    loan_amount: float,
    scenario: StressScenario,
    liquidation_threshold: float,
    loss_given_default: float,
) -> StressTestResult:
    new_value = collateral_value * (1.0 + scenario.price_shock)
    resulting_ltv = loan_to_value(loan_amount, new_value)
    triggered = resulting_ltv >= liquidation_threshold
    return StressTestResult(
        scenario=scenario.name,
        description=scenario.description,
        price_shock=scenario.price_shock,
        resulting_ltv=resulting_ltv,
        liquidation_triggered=triggered,
        expected_loss=loan_amount * loss_given_default if triggered else 0.0,
    )


def run_stress_tests(
    collateral_value: float,
    loan_amount: float,
    scenarios: Sequence[StressScenario],
    liquidation_threshold: float,
    loss_given_default: float,
) -> tuple[StressTestResult, ...]:
    return tuple(
        stress_test(
            collateral_value, loan_amount, s, liquidation_threshold, loss_given_default
        )
        for s in scenarios
    )


# ---------------------------------------------------------------------------
# Volatility
# ---------------------------------------------------------------------------


def forecast_volatility(
    volatilities: Sequence[float], horizon_days: int
) -> VolatilityForecast:
    expected = sum(volatilities) / len(volatilities) if volatilities else 0.0
    width = expected * FORECAST_BAND
    regime = "extreme"
    for upper, name in VOLATILITY_REGIMES:
        if expected <= upper:
            regime = name
            break
    return VolatilityForecast(
        horizon_days=horizon_days,
        expected_volatility=expected,
        low=expected - width,
        high=expected + width,
        regime=regime,
    )


def value_at_risk(total_value: float, volatility: float) -> float:
    return total_value * volatility * VAR_99_Z


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


def weights(values: Sequence[float]) -> list[float]:
    """Normalise values to weights summing to 1 (equal split when all are zero)."""
    if not values:
        return []
    total = sum(values)
    if total <= 0:
        return [1.0 / len(values)] * len(values)
    return [v / total for v in values]


def reweight(assets: Sequence[CollateralAsset]) -> tuple[CollateralAsset, ...]:
    new_weights = weights([a.value_usd for a in assets])
    return tuple(replace(a, weight=w) for a, w in zip(assets, new_weights))


def reprice(
    assets: Sequence[CollateralAsset], prices: Mapping[str, float]
) -> tuple[CollateralAsset, ...]:
    """Apply fresh prices; symbols missing from ``prices`` keep their last price."""
    repriced: list[CollateralAsset] = []
    for a in assets:
        price = prices.get(a.symbol)
        if price is None or price <= 0:
            repriced.append(a)
            continue
        change = (price - a.price_usd) / a.price_usd if a.price_usd > 0 else 0.0
        repriced.append(
            replace(
                a,
                price_usd=price,
                value_usd=a.amount * price,
                price_change=change,
            )
        )
    return reweight(repriced)


def average_volatility(assets: Sequence[CollateralAsset]) -> float:
    if not assets:
        return 0.0
    return sum(a.volatility for a in assets) / len(assets)


def compute_metrics(
    assets: Sequence[CollateralAsset],
    debt_value: float,
    thresholds: LTVThresholds,
) -> PositionMetrics:
    """Derive every position metric from assets and debt."""
    total = sum(a.value_usd for a in assets)
    ltv = loan_to_value(debt_value, total)
    vol = average_volatility(assets)
    return PositionMetrics(
        current_ltv=ltv,
        health_factor=health_factor(ltv, thresholds.liquidation),
        volatility_index=vol,
        diversification_score=diversification(a.weight for a in assets),
        liquidation_distance=liquidation_distance(ltv, thresholds.liquidation),
        value_at_risk=value_at_risk(total, vol),
    )


def collateral_needed(
    debt_value: float, collateral_value: float, target_ltv: float
) -> float:
    """USD of collateral to add so that LTV falls to ``target_ltv``."""
    if target_ltv <= 0:
        return math.inf
    return max(0.0, debt_value / target_ltv - collateral_value)


def excess_collateral(
    debt_value: float,
    collateral_value: float,
    target_health_factor: float,
    liquidation_threshold: float,
) -> float:
    """USD of collateral removable while keeping ``target_health_factor``."""
    if debt_value <= 0:
        return collateral_value
    required = target_health_factor * debt_value / liquidation_threshold
    return max(0.0, collateral_value - required)
