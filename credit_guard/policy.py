"""Risk-model policy tables shared by underwriting and monitoring.

Every numeric threshold the decision procedure uses lives here or in
``config``; services refer to them by name.
"""
from __future__ import annotations

from dataclasses import dataclass

from .models import RiskLevel

# Credit scores below this are declined under every risk model.
ABSOLUTE_MIN_CREDIT_SCORE = 250

# Risk score above which the approved amount is cut.
AMOUNT_REDUCTION_RISK_SCORE = 40
AMOUNT_REDUCTION_FACTOR = 0.8

# Credit score below which an approval requires extra collateral.
EXTRA_COLLATERAL_CREDIT_SCORE = 500

# Collateral recommendations aim this far inside the safe zone.
SAFE_ZONE_TARGET_FACTOR = 0.95


@dataclass(frozen=True)
class RiskModelPolicy:
    """Named ``(max_risk_score, min_credit_score)`` bundle."""

    name: str
    max_risk_score: int
    min_credit_score: int


DEFAULT_RISK_MODELS: dict[str, RiskModelPolicy] = {
    "conservative": RiskModelPolicy("conservative", max_risk_score=35, min_credit_score=550),
    "moderate": RiskModelPolicy("moderate", max_risk_score=50, min_credit_score=400),
    "aggressive": RiskModelPolicy("aggressive", max_risk_score=65, min_credit_score=350),
}


# ---------------------------------------------------------------------------
# Risk score -> level
# ---------------------------------------------------------------------------

# Inclusive upper bounds; anything above the last is EXTREME.
RISK_LEVEL_BOUNDARIES: tuple[tuple[int, RiskLevel], ...] = (
    (15, RiskLevel.MINIMAL),
    (30, RiskLevel.LOW),
    (45, RiskLevel.MODERATE),
    (60, RiskLevel.ELEVATED),
    (80, RiskLevel.HIGH),
)


def risk_level_for_score(score: int) -> RiskLevel:
    for upper, level in RISK_LEVEL_BOUNDARIES:
        if score <= upper:
            return level
    return RiskLevel.EXTREME


# ---------------------------------------------------------------------------
# Factor buckets: (inclusive upper bound, severity, impact)
# ---------------------------------------------------------------------------

LTV_RISK_BUCKETS: tuple[tuple[float, RiskLevel, float], ...] = (
    (0.4, RiskLevel.MINIMAL, 0.1),
    (0.5, RiskLevel.LOW, 0.2),
    (0.6, RiskLevel.MODERATE, 0.4),
    (0.7, RiskLevel.ELEVATED, 0.6),
    (0.8, RiskLevel.HIGH, 0.8),
)
LTV_RISK_CEILING = (RiskLevel.EXTREME, 1.0)

VOLATILITY_BUCKETS: tuple[tuple[float, RiskLevel], ...] = (
    (0.02, RiskLevel.MINIMAL),
    (0.04, RiskLevel.LOW),
    (0.06, RiskLevel.MODERATE),
    (0.08, RiskLevel.ELEVATED),
)
VOLATILITY_CEILING = RiskLevel.HIGH
# Daily volatility is scaled by this to express impact on [0, 1].
VOLATILITY_IMPACT_SCALE = 10.0

# Market condition in [0, 1], 1 = favourable: (exclusive lower bound, severity).
MARKET_BUCKETS: tuple[tuple[float, RiskLevel, str], ...] = (
    (0.8, RiskLevel.MINIMAL, "Favorable market conditions"),
    (0.6, RiskLevel.LOW, "Stable market conditions"),
    (0.4, RiskLevel.MODERATE, "Normal market conditions"),
    (0.2, RiskLevel.ELEVATED, "Elevated market uncertainty"),
)
MARKET_FLOOR = (RiskLevel.HIGH, "Adverse market conditions")

# Liquid share of collateral: (inclusive lower bound, severity).
LIQUIDITY_BUCKETS: tuple[tuple[float, RiskLevel], ...] = (
    (1.0, RiskLevel.MINIMAL),
    (0.8, RiskLevel.LOW),
    (0.5, RiskLevel.MODERATE),
)
LIQUIDITY_FLOOR = RiskLevel.ELEVATED

SINGLE_ASSET_CONCENTRATION = (RiskLevel.ELEVATED, 0.5)
CONCENTRATED_HHI = 0.5


# ---------------------------------------------------------------------------
# Terms scaled by risk level
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TermSchedule:
    max_ltv: float
    interest_premium: float
    min_diversification: float
    max_concentration: float


TERM_SCHEDULE: dict[RiskLevel, TermSchedule] = {
    RiskLevel.MINIMAL: TermSchedule(0.75, 0.00, 0.0, 1.0),
    RiskLevel.LOW: TermSchedule(0.70, 0.02, 0.0, 1.0),
    RiskLevel.MODERATE: TermSchedule(0.65, 0.04, 0.3, 0.7),
    RiskLevel.ELEVATED: TermSchedule(0.55, 0.06, 0.3, 0.7),
    RiskLevel.HIGH: TermSchedule(0.45, 0.10, 0.3, 0.7),
    RiskLevel.EXTREME: TermSchedule(0.35, 0.15, 0.3, 0.7),
}

# LTV covenant sits this far above the approved max LTV.
COVENANT_LTV_BUFFER = 0.05
# Minimum collateral covenant as a multiple of the approved amount.
COVENANT_MIN_COLLATERAL_MULTIPLE = 1.2

# Borrowing capacity = base * (score / divisor) ** 2
BORROWING_CAPACITY_BASE = 1000.0
BORROWING_CAPACITY_DIVISOR = 300.0
