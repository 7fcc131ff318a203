"""Underwriting: risk assessment and credit decisions for loan requests.

An assessment is computed once and written once. A changed request (or an
expired decision) needs a new assessment.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Sequence

from .. import policy, risk
from ..config import AppConfig
from ..errors import CollaboratorError, ValidationError
from ..events import EventBus, make_event
from ..interfaces.credit import CreditScoreProvider, MarketSignal, RiskAnalyzer
from ..interfaces.price_oracle import PriceOracle
from ..models import (
    AnalyzerResult,
    ApprovedTerms,
    CollateralAsset,
    CollateralRequirement,
    CreditAnalysis,
    CreditScore,
    DecisionOutcome,
    EventType,
    LoanCovenant,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    StressScenario,
    StressTestResult,
    UnderwritingAssessment,
    UnderwritingDecision,
    UnderwritingRequest,
    UnderwritingStats,
    VolatilityForecast,
)
from ..resilience import RetryPolicy, call_collaborator
from ..store import LoanStore, new_id
from .pricing import build_assets, fetch_prices, validate_offers

logger = logging.getLogger(__name__)

MAX_CREDIT_SCORE = 1000


# ---------------------------------------------------------------------------
# Factor scoring
# ---------------------------------------------------------------------------


def ltv_factor(ltv: float) -> RiskFactor:
    severity, impact = policy.LTV_RISK_CEILING
    for upper, level, level_impact in policy.LTV_RISK_BUCKETS:
        if ltv <= upper:
            severity, impact = level, level_impact
            break
    return RiskFactor(
        name="LTV Risk",
        category="collateral",
        severity=severity,
        impact=impact,
        description=f"Loan-to-value ratio of {ltv:.1%}",
        mitigation="Additional collateral can reduce LTV" if ltv > 0.5 else "",
    )


def concentration_factor(assets: Sequence[CollateralAsset]) -> RiskFactor:
    if len(assets) == 1:
        severity, impact = policy.SINGLE_ASSET_CONCENTRATION
        return RiskFactor(
            name="Concentration Risk",
            category="diversification",
            severity=severity,
            impact=impact,
            description="Single asset collateral presents concentration risk",
            mitigation="Diversify collateral with multiple assets",
        )
    hhi = sum(a.weight * a.weight for a in assets)
    return RiskFactor(
        name="Concentration Risk",
        category="diversification",
        severity=RiskLevel.MODERATE if hhi > policy.CONCENTRATED_HHI else RiskLevel.LOW,
        impact=hhi,
        description=f"Collateral diversification score: {1 - hhi:.0%}",
        mitigation="Consider adding more diverse assets" if hhi > 0.3 else "",
    )


def volatility_factor(volatility: float) -> RiskFactor:
    severity = policy.VOLATILITY_CEILING
    for upper, level in policy.VOLATILITY_BUCKETS:
        if volatility <= upper:
            severity = level
            break
    return RiskFactor(
        name="Volatility Risk",
        category="market",
        severity=severity,
        impact=min(1.0, volatility * policy.VOLATILITY_IMPACT_SCALE),
        description=f"Average collateral volatility: {volatility:.1%}",
        mitigation="Include stablecoins or lower volatility assets",
    )


def market_factor(condition: float) -> RiskFactor:
    condition = min(1.0, max(0.0, condition))
    severity, description = policy.MARKET_FLOOR
    for lower, level, text in policy.MARKET_BUCKETS:
        if condition > lower:
            severity, description = level, text
            break
    return RiskFactor(
        name="Market Risk",
        category="macro",
        severity=severity,
        impact=1.0 - condition,
        description=description,
    )


def liquidity_factor(liquid_share: float) -> RiskFactor:
    severity = policy.LIQUIDITY_FLOOR
    for lower, level in policy.LIQUIDITY_BUCKETS:
        if liquid_share >= lower:
            severity = level
            break
    return RiskFactor(
        name="Liquidity Risk",
        category="market",
        severity=severity,
        impact=1.0 - liquid_share,
        description=f"{liquid_share:.0%} of collateral is highly liquid",
        mitigation="Prefer liquid assets as collateral" if liquid_share < 1 else "",
    )


def risk_score(factors: Sequence[RiskFactor]) -> int:
    if not factors:
        return 0
    return min(100, round(100 * sum(f.impact for f in factors) / len(factors)))


def borrowing_capacity(score: int) -> float:
    return policy.BORROWING_CAPACITY_BASE * (score / policy.BORROWING_CAPACITY_DIVISOR) ** 2


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class UnderwritingEngine:
    def __init__(
        self,
        store: LoanStore,
        bus: EventBus,
        config: AppConfig,
        credit_scores: CreditScoreProvider,
        oracle: PriceOracle | None = None,
        market: MarketSignal | None = None,
        analyzer: RiskAnalyzer | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config
        self._cfg = config.underwriting
        self._credit_scores = credit_scores
        self._oracle = oracle
        self._market = market
        self._analyzer = analyzer
        self._retry = retry or RetryPolicy.from_config(config.collaborators)

    async def assess_loan_request(
        self, user_id: str, request: UnderwritingRequest
    ) -> UnderwritingAssessment:
        """Score a request and record an immutable decision."""
        self._validate(user_id, request)

        symbols = [o.asset for o in request.collateral] + [request.requested_asset]
        prices = await fetch_prices(symbols, self._oracle, self._config, self._retry)
        if request.requested_asset not in prices:
            raise ValidationError(f"No price available for {request.requested_asset}")
        assets = build_assets(request.collateral, prices, self._config)

        score = await self._credit_score(user_id)
        now = self._store.clock.now()
        credit = self._credit_analysis(score, now)

        loan_value = request.requested_amount * prices[request.requested_asset]
        assessment_risk = await self._analyze_risk(assets, loan_value)
        analysis = await self._run_analyzer(user_id, request, assessment_risk, score)
        decision = self._decide(request, assessment_risk, credit, now)

        assessment = UnderwritingAssessment(
            id=new_id("assess"),
            user_id=user_id,
            request=request,
            collateral=assets,
            risk=assessment_risk,
            credit=credit,
            decision=decision,
            created_at=now,
            analysis=analysis,
        )
        await self._store.add_assessment(assessment)

        logger.info(
            "Assessment %s for %s: %s (risk %d %s, credit %d)",
            assessment.id,
            user_id,
            decision.outcome.value,
            assessment_risk.risk_score,
            assessment_risk.overall_risk.value,
            credit.score,
        )
        data = {
            "assessment_id": assessment.id,
            "requested_amount": request.requested_amount,
            "approved": decision.approved,
        }
        self._bus.publish(make_event(EventType.LOAN_REQUESTED, now, user_id=user_id, data=data))
        if decision.approved:
            self._bus.publish(
                make_event(
                    EventType.LOAN_APPROVED,
                    now,
                    user_id=user_id,
                    data={**data, "approved_amount": decision.approved_amount},
                )
            )
        return assessment

    async def get_assessment(self, assessment_id: str) -> UnderwritingAssessment:
        return await self._store.get_assessment(assessment_id)

    async def list_assessments(self, user_id: str | None = None) -> list[UnderwritingAssessment]:
        return await self._store.list_assessments(user_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _validate(self, user_id: str, request: UnderwritingRequest) -> None:
        if not user_id:
            raise ValidationError("User id is required")
        if not request.requested_asset:
            raise ValidationError("Requested asset is required")
        if request.requested_amount <= 0:
            raise ValidationError("Requested amount must be positive")
        validate_offers(request.collateral)

    async def _credit_score(self, user_id: str) -> CreditScore:
        score = await call_collaborator(
            "credit_scores", lambda: self._credit_scores.get_score(user_id), self._retry
        )
        if not 0 <= score.score <= MAX_CREDIT_SCORE:
            raise CollaboratorError(
                "credit_scores", f"score {score.score} out of range", retryable=False
            )
        return score

    def _credit_analysis(self, score: CreditScore, now: datetime) -> CreditAnalysis:
        age_hours = max(0.0, (now - score.updated_at).total_seconds() / 3600)
        stale = age_hours > self._cfg.credit_score_staleness_hours
        if stale:
            logger.warning(
                "Credit score for %s is %.1fh old (limit %.1fh)",
                score.user_id,
                age_hours,
                self._cfg.credit_score_staleness_hours,
            )
        return CreditAnalysis(
            score=score.score,
            grade=score.grade,
            borrowing_capacity=borrowing_capacity(score.score),
            score_age_hours=age_hours,
            stale=stale,
        )

    async def _market_condition(self) -> float:
        if self._market is None:
            return self._cfg.market_condition
        try:
            return await call_collaborator(
                "market_signal", self._market.market_condition, self._retry
            )
        except CollaboratorError as e:
            logger.warning("Market signal unavailable, assuming neutral: %s", e)
            return self._cfg.market_condition

    async def _analyze_risk(
        self, assets: Sequence[CollateralAsset], loan_value: float
    ) -> RiskAssessment:
        collateral_value = sum(a.value_usd for a in assets)
        ltv = risk.loan_to_value(loan_value, collateral_value)
        forecast = self.forecast_volatility(assets)
        liquid_value = sum(
            a.value_usd for a in assets if self._config.asset_profile(a.symbol).liquid
        )
        liquid_share = liquid_value / collateral_value if collateral_value > 0 else 0.0

        factors = (
            ltv_factor(ltv),
            concentration_factor(assets),
            volatility_factor(risk.average_volatility(assets)),
            market_factor(await self._market_condition()),
            liquidity_factor(liquid_share),
        )
        score = risk_score(factors)
        probability = risk.liquidation_probability(
            ltv,
            forecast.expected_volatility,
            self._cfg.horizon_days,
            self._config.lending.liquidation_threshold,
        )
        return RiskAssessment(
            overall_risk=policy.risk_level_for_score(score),
            risk_score=score,
            implied_ltv=ltv,
            collateral_value=collateral_value,
            factors=factors,
            volatility_forecast=forecast,
            liquidation_probability=probability,
            expected_loss=probability * loan_value * self._cfg.loss_given_default,
            stress_results=self.run_stress_tests(collateral_value, loan_value),
        )

    async def _run_analyzer(
        self,
        user_id: str,
        request: UnderwritingRequest,
        assessment_risk: RiskAssessment,
        score: CreditScore,
    ) -> AnalyzerResult | None:
        if self._analyzer is None or not self._cfg.analyzer_enabled:
            return None
        analyzer = self._analyzer
        try:
            return await call_collaborator(
                "risk_analyzer",
                lambda: analyzer.analyze(user_id, request, assessment_risk, score.score),
                self._retry,
            )
        except CollaboratorError as e:
            logger.warning("Risk analyzer failed for %s: %s", user_id, e)
            return None

    def _decide(
        self,
        request: UnderwritingRequest,
        assessment_risk: RiskAssessment,
        credit: CreditAnalysis,
        now: datetime,
    ) -> UnderwritingDecision:
        model = self._config.risk_policy
        valid_until = now + timedelta(hours=self._cfg.validity_hours)
        score = assessment_risk.risk_score

        reasons: list[str] = []
        if assessment_risk.overall_risk is RiskLevel.EXTREME:
            reasons.append("Extreme risk level: collateral insufficient")
        if credit.score < policy.ABSOLUTE_MIN_CREDIT_SCORE:
            reasons.append(
                f"Credit score {credit.score} below absolute minimum "
                f"{policy.ABSOLUTE_MIN_CREDIT_SCORE}"
            )
        if score > model.max_risk_score:
            reasons.append(
                f"Risk score {score} exceeds {model.name} threshold {model.max_risk_score}"
            )
        if credit.score < model.min_credit_score:
            reasons.append(
                f"Credit score {credit.score} below {model.name} minimum {model.min_credit_score}"
            )
        if request.requested_amount > self._cfg.max_exposure:
            reasons.append(
                f"Requested amount exceeds maximum exposure {self._cfg.max_exposure:g}"
            )
        if reasons:
            return UnderwritingDecision(
                approved=False,
                outcome=DecisionOutcome.DECLINED,
                decided_at=now,
                valid_until=valid_until,
                decline_reasons=tuple(reasons),
            )

        conditions: list[str] = []
        amount = request.requested_amount
        if score > policy.AMOUNT_REDUCTION_RISK_SCORE:
            amount *= policy.AMOUNT_REDUCTION_FACTOR
            conditions.append("Amount reduced due to risk factors")
        if credit.score < policy.EXTRA_COLLATERAL_CREDIT_SCORE:
            conditions.append("Additional collateral required")
        if credit.stale:
            conditions.append("Credit score must be re-verified before disbursement")

        terms = self.calculate_terms(assessment_risk.overall_risk, amount)
        reduction = amount / request.requested_amount
        if assessment_risk.implied_ltv * reduction > terms.max_ltv:
            conditions.append(
                f"Add collateral or reduce the amount to bring LTV within {terms.max_ltv:.0%}"
            )
        return UnderwritingDecision(
            approved=True,
            outcome=(
                DecisionOutcome.APPROVED_WITH_CONDITIONS if conditions else DecisionOutcome.APPROVED
            ),
            decided_at=now,
            valid_until=valid_until,
            approved_amount=amount,
            terms=terms,
            conditions=tuple(conditions),
        )

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    def calculate_terms(self, level: RiskLevel, amount: float) -> ApprovedTerms:
        """Terms for an approved amount; riskier loans get lower LTV and higher rates."""
        schedule = policy.TERM_SCHEDULE[level]
        return ApprovedTerms(
            max_ltv=schedule.max_ltv,
            interest_rate=self._cfg.base_interest_rate + schedule.interest_premium,
            collateral_requirements=(
                CollateralRequirement(
                    min_amount=amount / schedule.max_ltv,
                    accepted_assets=self._config.lending.supported_assets,
                    min_diversification=schedule.min_diversification,
                    max_concentration=schedule.max_concentration,
                ),
            ),
            covenants=(
                LoanCovenant(
                    type="LTV Maintenance",
                    description="Maintain LTV below threshold",
                    threshold=schedule.max_ltv + policy.COVENANT_LTV_BUFFER,
                    consequence="Margin call triggered",
                ),
                LoanCovenant(
                    type="Minimum Collateral",
                    description="Maintain minimum collateral value",
                    threshold=amount * policy.COVENANT_MIN_COLLATERAL_MULTIPLE,
                    consequence="Additional collateral required",
                ),
            ),
        )

    def run_stress_tests(
        self,
        collateral_value: float,
        loan_amount: float,
        scenarios: Sequence[StressScenario] | None = None,
    ) -> tuple[StressTestResult, ...]:
        return risk.run_stress_tests(
            collateral_value,
            loan_amount,
            scenarios or self._cfg.stress_scenarios,
            self._config.lending.liquidation_threshold,
            self._cfg.loss_given_default,
        )

    def forecast_volatility(
        self, assets: Sequence[CollateralAsset], horizon_days: int | None = None
    ) -> VolatilityForecast:
        return risk.forecast_volatility(
            [a.volatility for a in assets], horizon_days or self._cfg.horizon_days
        )

    async def get_stats(self) -> UnderwritingStats:
        assessments = await self._store.list_assessments()
        approved = [a for a in assessments if a.decision.approved]
        reasons: Counter[str] = Counter()
        for a in assessments:
            reasons.update(a.decision.decline_reasons)
        total = len(assessments)
        return UnderwritingStats(
            total_assessments=total,
            approval_rate=len(approved) / total if total else 0.0,
            average_risk_score=(
                sum(a.risk.risk_score for a in assessments) / total if total else 0.0
            ),
            average_approved_amount=(
                sum(a.decision.approved_amount for a in approved) / len(approved)
                if approved
                else 0.0
            ),
            decline_reasons=dict(reasons),
        )
