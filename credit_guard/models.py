"""Data models. All of them are frozen.

A change to a loan or position is a new snapshot built with
``dataclasses.replace`` and swapped into the store as a whole.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LoanStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    MARGIN_CALL = "margin_call"
    LIQUIDATION_PENDING = "liquidation_pending"
    PARTIALLY_LIQUIDATED = "partially_liquidated"
    FULLY_LIQUIDATED = "fully_liquidated"
    CLOSED = "closed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


TERMINAL_LOAN_STATUSES = frozenset(
    {LoanStatus.CLOSED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED}
)

_ALWAYS_REACHABLE = frozenset({LoanStatus.DEFAULTED, LoanStatus.CANCELLED})

LOAN_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.ACTIVE}) | _ALWAYS_REACHABLE,
    LoanStatus.ACTIVE: frozenset(
        {LoanStatus.MARGIN_CALL, LoanStatus.LIQUIDATION_PENDING, LoanStatus.CLOSED}
    )
    | _ALWAYS_REACHABLE,
    LoanStatus.MARGIN_CALL: frozenset(
        {LoanStatus.ACTIVE, LoanStatus.LIQUIDATION_PENDING, LoanStatus.CLOSED}
    )
    | _ALWAYS_REACHABLE,
    LoanStatus.LIQUIDATION_PENDING: frozenset(
        {LoanStatus.PARTIALLY_LIQUIDATED, LoanStatus.FULLY_LIQUIDATED}
    )
    | _ALWAYS_REACHABLE,
    LoanStatus.PARTIALLY_LIQUIDATED: frozenset({LoanStatus.CLOSED}) | _ALWAYS_REACHABLE,
    LoanStatus.FULLY_LIQUIDATED: frozenset({LoanStatus.CLOSED}) | _ALWAYS_REACHABLE,
    LoanStatus.CLOSED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Whether the loan state machine allows ``current -> target``."""
    return target in LOAN_TRANSITIONS[current]


class PositionStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    LIQUIDATING = "liquidating"
    LIQUIDATED = "liquidated"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class AlertType(str, Enum):
    MARGIN_WARNING = "margin_warning"
    MARGIN_CRITICAL = "margin_critical"
    LIQUIDATION_RISK = "liquidation_risk"
    VOLATILITY_SPIKE = "volatility_spike"
    CONCENTRATION_RISK = "concentration_risk"
    PAYMENT_DUE = "payment_due"
    REFINANCE_OPPORTUNITY = "refinance_opportunity"


class RiskLevel(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MODERATE = "moderate"
    ELEVATED = "elevated"
    HIGH = "high"
    EXTREME = "extreme"


class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    APPROVED_WITH_CONDITIONS = "approved_with_conditions"
    DECLINED = "declined"


class HealthVerdict(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    LIQUIDATION_RISK = "liquidation_risk"


class EventType(str, Enum):
    LOAN_REQUESTED = "loan_requested"
    LOAN_APPROVED = "loan_approved"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CLOSED = "loan_closed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_CANCELLED = "loan_cancelled"
    COLLATERAL_DEPOSITED = "collateral_deposited"
    COLLATERAL_WITHDRAWN = "collateral_withdrawn"
    COLLATERAL_TOPPED_UP = "collateral_topped_up"
    COLLATERAL_REBALANCED = "collateral_rebalanced"
    COLLATERAL_LIQUIDATED = "collateral_liquidated"
    MARGIN_CALL_TRIGGERED = "margin_call_triggered"
    MARGIN_CALL_RESOLVED = "margin_call_resolved"
    LIQUIDATION_TRIGGERED = "liquidation_triggered"
    ALERT_TRIGGERED = "alert_triggered"
    PROVIDER_CONNECTED = "provider_connected"


# ---------------------------------------------------------------------------
# Shared records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Alert:
    """Alert raised against a loan or a collateral position."""

    id: str
    type: AlertType
    severity: Severity
    message: str
    created_at: datetime
    acknowledged_at: datetime | None = None
    action_required: str = ""

    @property
    def acknowledged(self) -> bool:
        return self.acknowledged_at is not None


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    timestamp: datetime
    type: str
    description: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Event:
    """Typed event published on the event bus."""

    id: str
    type: EventType
    category: str
    timestamp: datetime
    loan_id: str | None = None
    user_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LTVThresholds:
    """LTV fractions separating healthy / warning / critical / liquidating."""

    safe_zone: float = 0.7
    margin_call: float = 0.8
    liquidation: float = 0.85


@dataclass(frozen=True)
class LTVInfo:
    current: float
    initial: float
    max: float
    liquidation: float = 0.85
    margin_call: float = 0.8
    safe_zone: float = 0.7

    @property
    def thresholds(self) -> LTVThresholds:
        return LTVThresholds(
            safe_zone=self.safe_zone,
            margin_call=self.margin_call,
            liquidation=self.liquidation,
        )


@dataclass(frozen=True)
class Principal:
    asset: str
    amount: float
    remaining: float
    value_usd: float = 0.0


@dataclass(frozen=True)
class InterestInfo:
    rate: float
    accrued: float = 0.0
    paid: float = 0.0


@dataclass(frozen=True)
class ScheduledPayment:
    id: str
    due_date: datetime
    amount: float
    status: str = "scheduled"


@dataclass(frozen=True)
class RepaymentSchedule:
    type: str = "flexible"
    payments: tuple[ScheduledPayment, ...] = ()

    @property
    def next_payment(self) -> ScheduledPayment | None:
        pending = [p for p in self.payments if p.status == "scheduled"]
        return min(pending, key=lambda p: p.due_date) if pending else None


@dataclass(frozen=True)
class Loan:
    id: str
    user_id: str
    provider: str
    status: LoanStatus
    principal: Principal
    interest: InterestInfo
    ltv: LTVInfo
    created_at: datetime
    updated_at: datetime
    external_id: str = ""
    assessment_id: str | None = None
    schedule: RepaymentSchedule = field(default_factory=RepaymentSchedule)
    history: tuple[HistoryEntry, ...] = ()
    alerts: tuple[Alert, ...] = ()
    closed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOAN_STATUSES


# ---------------------------------------------------------------------------
# Collateral positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CollateralAsset:
    """Single collateral asset within a position."""

    symbol: str
    amount: float
    price_usd: float = 0.0
    value_usd: float = 0.0
    weight: float = 0.0
    volatility: float = 0.0
    price_change: float = 0.0


@dataclass(frozen=True)
class PositionMetrics:
    current_ltv: float = 0.0
    health_factor: float = math.inf
    volatility_index: float = 0.0
    diversification_score: float = 0.0
    liquidation_distance: float = math.inf
    value_at_risk: float = 0.0


@dataclass(frozen=True)
class AutoTopUpConfig:
    """Top-up amounts are in units of ``top_up_asset``."""

    enabled: bool = False
    trigger_threshold: float = 0.75
    target_ltv: float = 0.6
    top_up_asset: str = "USDT"
    min_top_up_amount: float = 100.0
    max_top_up_amount: float = 1000.0


@dataclass(frozen=True)
class AllocationTarget:
    asset: str
    target_weight: float


@dataclass(frozen=True)
class AutoRebalanceConfig:
    enabled: bool = False
    targets: tuple[AllocationTarget, ...] = ()
    rebalance_threshold: float = 0.1


@dataclass(frozen=True)
class AutoWithdrawConfig:
    enabled: bool = False
    withdraw_threshold: float = 1.8
    withdraw_asset: str = "USDT"


@dataclass(frozen=True)
class Automation:
    auto_top_up: AutoTopUpConfig = field(default_factory=AutoTopUpConfig)
    auto_rebalance: AutoRebalanceConfig = field(default_factory=AutoRebalanceConfig)
    auto_withdraw: AutoWithdrawConfig = field(default_factory=AutoWithdrawConfig)


@dataclass(frozen=True)
class MonitoringState:
    enabled: bool = True
    check_interval: float = 60.0
    last_check: datetime | None = None
    next_check: datetime | None = None
    # Worst bucket already alerted on; only a move into a worse one alerts.
    alerted_status: PositionStatus = PositionStatus.HEALTHY
    active_flags: frozenset[str] = frozenset()
    alerts: tuple[Alert, ...] = ()


@dataclass(frozen=True)
class CollateralPosition:
    id: str
    loan_id: str
    user_id: str
    status: PositionStatus
    assets: tuple[CollateralAsset, ...]
    total_value_usd: float
    debt_asset: str
    debt_amount: float
    thresholds: LTVThresholds
    metrics: PositionMetrics
    created_at: datetime
    updated_at: datetime
    debt_price_usd: float = 1.0
    monitoring: MonitoringState = field(default_factory=MonitoringState)
    automation: Automation = field(default_factory=Automation)
    history: tuple[HistoryEntry, ...] = ()

    @property
    def debt_value_usd(self) -> float:
        return self.debt_amount * self.debt_price_usd

    @property
    def symbols(self) -> list[str]:
        return [a.symbol for a in self.assets]

    def asset(self, symbol: str) -> CollateralAsset | None:
        for a in self.assets:
            if a.symbol == symbol:
                return a
        return None


# ---------------------------------------------------------------------------
# Providers and quotes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CollateralOffer:
    asset: str
    amount: float


@dataclass(frozen=True)
class Quote:
    provider: str
    collateral_asset: str
    collateral_amount: float
    borrow_asset: str
    borrow_amount: float
    ltv: float
    interest_rate: float
    liquidation_price: float = 0.0
    valid_until: datetime | None = None


@dataclass(frozen=True)
class CreateLoanRequest:
    user_id: str
    collateral: tuple[CollateralOffer, ...]
    borrow_asset: str
    borrow_amount: float
    ltv: float | None = None
    provider: str | None = None


@dataclass(frozen=True)
class ProviderLoan:
    """Receipt returned by a provider after it opens a loan."""

    external_id: str
    interest_rate: float
    status: LoanStatus = LoanStatus.ACTIVE


# ---------------------------------------------------------------------------
# Underwriting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnderwritingRequest:
    requested_amount: float
    requested_asset: str
    collateral: tuple[CollateralOffer, ...]
    purpose: str = ""


@dataclass(frozen=True)
class StressScenario:
    name: str
    price_shock: float
    description: str = ""


@dataclass(frozen=True)
class StressTestResult:
    scenario: str
    description: str
    price_shock: float
    resulting_ltv: float
    liquidation_triggered: bool
    expected_loss: float


@dataclass(frozen=True)
class RiskFactor:
    name: str
    category: str
    severity: RiskLevel
    impact: float
    description: str
    mitigation: str = ""


@dataclass(frozen=True)
class VolatilityForecast:
    horizon_days: int
    expected_volatility: float
    low: float
    high: float
    regime: str
    method: str = "asset-profile mean"


@dataclass(frozen=True)
class RiskAssessment:
    overall_risk: RiskLevel
    risk_score: int
    implied_ltv: float
    collateral_value: float
    factors: tuple[RiskFactor, ...]
    volatility_forecast: VolatilityForecast
    liquidation_probability: float
    expected_loss: float
    stress_results: tuple[StressTestResult, ...]


@dataclass(frozen=True)
class CreditScore:
    user_id: str
    score: int
    grade: str
    updated_at: datetime


@dataclass(frozen=True)
class CreditAnalysis:
    score: int
    grade: str
    borrowing_capacity: float
    score_age_hours: float
    stale: bool


@dataclass(frozen=True)
class CollateralRequirement:
    min_amount: float
    accepted_assets: tuple[str, ...]
    min_diversification: float
    max_concentration: float


@dataclass(frozen=True)
class LoanCovenant:
    type: str
    description: str
    threshold: float
    consequence: str


@dataclass(frozen=True)
class ApprovedTerms:
    max_ltv: float
    interest_rate: float
    collateral_requirements: tuple[CollateralRequirement, ...]
    covenants: tuple[LoanCovenant, ...]


@dataclass(frozen=True)
class UnderwritingDecision:
    approved: bool
    outcome: DecisionOutcome
    decided_at: datetime
    valid_until: datetime
    approved_amount: float = 0.0
    terms: ApprovedTerms | None = None
    conditions: tuple[str, ...] = ()
    decline_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class AnalyzerResult:
    recommendation: str
    confidence: float
    reasoning: tuple[str, ...] = ()
    model_id: str = ""


@dataclass(frozen=True)
class UnderwritingAssessment:
    id: str
    user_id: str
    request: UnderwritingRequest
    collateral: tuple[CollateralAsset, ...]
    risk: RiskAssessment
    credit: CreditAnalysis
    decision: UnderwritingDecision
    created_at: datetime
    analysis: AnalyzerResult | None = None

    @property
    def expires_at(self) -> datetime:
        return self.decision.valid_until


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoanHealthCheck:
    loan_id: str
    health: HealthVerdict
    ltv: float
    health_factor: float
    liquidation_distance: float
    alerts: tuple[Alert, ...]
    recommendations: tuple[str, ...]
    refinance_quotes: tuple[Quote, ...] = ()


@dataclass(frozen=True)
class LendingStats:
    total_loans: int
    active_loans: int
    total_borrowed_usd: float
    total_collateral_usd: float
    average_ltv: float
    average_interest_rate: float
    loans_at_risk: int
    default_rate: float


@dataclass(frozen=True)
class CollateralStats:
    total_positions: int
    total_value_usd: float
    positions_at_risk: int
    average_health_factor: float
    alerts_active: int


@dataclass(frozen=True)
class UnderwritingStats:
    total_assessments: int
    approval_rate: float
    average_risk_score: float
    average_approved_amount: float
    decline_reasons: Mapping[str, int] = field(default_factory=dict)
