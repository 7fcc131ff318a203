"""Loan health: verdicts, alerts, recommendations and refinance probing."""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .. import risk
from ..config import AppConfig
from ..events import EventBus, make_event
from ..models import (
    SEVERITY_RANK,
    Alert,
    AlertType,
    EventType,
    HealthVerdict,
    Loan,
    LoanHealthCheck,
    Quote,
    Severity,
)
from ..policy import SAFE_ZONE_TARGET_FACTOR
from ..store import LoanStore, new_id

if TYPE_CHECKING:
    from .lending import LendingService

logger = logging.getLogger(__name__)

# Float slack when comparing rate improvements.
RATE_EPSILON = 1e-9


def _debt_value(loan: Loan) -> float:
    if loan.principal.amount <= 0:
        return 0.0
    return loan.principal.value_usd * loan.principal.remaining / loan.principal.amount


def _alert(type: AlertType, severity: Severity, message: str, now: datetime, action: str = "") -> Alert:
    return Alert(
        id=new_id("alert"),
        type=type,
        severity=severity,
        message=message,
        created_at=now,
        action_required=action,
    )


def verdict_for(loan: Loan) -> HealthVerdict:
    """Bucket the loan's LTV against its own thresholds."""
    ltv, info = loan.ltv.current, loan.ltv
    if ltv >= info.liquidation:
        return HealthVerdict.LIQUIDATION_RISK
    if ltv >= info.margin_call:
        return HealthVerdict.CRITICAL
    if ltv >= info.safe_zone:
        return HealthVerdict.WARNING
    return HealthVerdict.HEALTHY


def assess(loan: Loan, now: datetime, payment_due_days: int = 3) -> LoanHealthCheck:
    """Evaluate a loan snapshot. Performs no I/O and writes nothing.

    Alerts come back most severe first.
    """
    ltv = loan.ltv.current
    info = loan.ltv
    hf = risk.health_factor(ltv, info.liquidation)
    distance = risk.liquidation_distance(ltv, info.liquidation)
    verdict = verdict_for(loan)

    alerts: list[Alert] = []
    recommendations: list[str] = []

    debt = _debt_value(loan)
    collateral = debt / ltv if ltv > 0 else 0.0
    to_safe_zone = risk.collateral_needed(
        debt, collateral, info.safe_zone * SAFE_ZONE_TARGET_FACTOR
    )

    if verdict is HealthVerdict.LIQUIDATION_RISK:
        alerts.append(
            _alert(
                AlertType.LIQUIDATION_RISK,
                Severity.CRITICAL,
                f"LTV {ltv:.2%} is at or above the liquidation threshold {info.liquidation:.2%}",
                now,
                "Add collateral or repay immediately",
            )
        )
        recommendations.append(f"Add about ${to_safe_zone:,.2f} of collateral immediately")
        recommendations.append("Repay part of the loan to reduce LTV")
    elif verdict is HealthVerdict.CRITICAL:
        alerts.append(
            _alert(
                AlertType.MARGIN_CRITICAL,
                Severity.CRITICAL,
                f"LTV {ltv:.2%} crossed the margin call threshold {info.margin_call:.2%}",
                now,
                "Add collateral or repay",
            )
        )
        recommendations.append(f"Add about ${to_safe_zone:,.2f} of collateral")
        recommendations.append("Enable auto top-up to avoid liquidation")
    elif verdict is HealthVerdict.WARNING:
        alerts.append(
            _alert(
                AlertType.MARGIN_WARNING,
                Severity.WARNING,
                f"LTV {ltv:.2%} is above the safe zone {info.safe_zone:.2%}",
                now,
                "Consider adding collateral",
            )
        )
        recommendations.append("Consider adding collateral to return to the safe zone")
    else:
        recommendations.append("Loan is healthy")

    upcoming = loan.schedule.next_payment
    if upcoming is not None and upcoming.due_date - now <= timedelta(days=payment_due_days):
        overdue = upcoming.due_date < now
        alerts.append(
            _alert(
                AlertType.PAYMENT_DUE,
                Severity.CRITICAL if overdue else Severity.WARNING,
                f"Payment of {upcoming.amount:g} {loan.principal.asset} "
                f"{'was due' if overdue else 'due'} on {upcoming.due_date:%Y-%m-%d}",
                now,
                "Make the scheduled payment",
            )
        )
        recommendations.append("Make the scheduled payment to avoid default")

    alerts.sort(key=lambda a: SEVERITY_RANK[a.severity], reverse=True)
    return LoanHealthCheck(
        loan_id=loan.id,
        health=verdict,
        ltv=ltv,
        health_factor=hf,
        liquidation_distance=distance,
        alerts=tuple(alerts),
        recommendations=tuple(recommendations),
    )


def alert_event_data(alert: Alert, ltv: float, health_factor: float) -> dict:
    return {
        "alert_id": alert.id,
        "severity": alert.severity.value,
        "type": alert.type.value,
        "message": alert.message,
        "ltv": ltv,
        "health_factor": health_factor,
        "action_required": alert.action_required,
    }


class HealthService:
    def __init__(
        self,
        store: LoanStore,
        bus: EventBus,
        config: AppConfig,
        lending: LendingService | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config
        self._lending = lending

    async def check_loan_health(
        self, loan_id: str, quote_refinance: bool = True
    ) -> LoanHealthCheck:
        """Assess a loan, persist new alerts and look for cheaper providers."""
        loan = await self._store.get_loan(loan_id)
        now = self._store.clock.now()
        report = assess(loan, now, self._config.lending.payment_due_days)
        if loan.is_terminal:
            return report

        alerts = list(report.alerts)
        quotes: tuple[Quote, ...] = ()
        if (
            quote_refinance
            and report.health is HealthVerdict.HEALTHY
            and self._config.lending.auto_refinance_enabled
            and self._lending is not None
        ):
            quotes = await self._refinance_quotes(self._lending, loan)
            if quotes:
                best = quotes[0]
                alerts.append(
                    _alert(
                        AlertType.REFINANCE_OPPORTUNITY,
                        Severity.INFO,
                        f"{best.provider} offers {best.interest_rate:.2%} "
                        f"vs current {loan.interest.rate:.2%}",
                        now,
                        "Review refinance options",
                    )
                )

        await self._persist(loan_id, alerts, report)
        return replace(report, alerts=tuple(alerts), refinance_quotes=quotes)

    async def check_all(self, user_id: str | None = None) -> list[LoanHealthCheck]:
        reports = []
        for loan in await self._store.list_loans(user_id=user_id):
            if loan.is_terminal:
                continue
            reports.append(await self.check_loan_health(loan.id, quote_refinance=False))
        return reports

    async def _refinance_quotes(
        self, lending: LendingService, loan: Loan
    ) -> tuple[Quote, ...]:
        position = await self._store.get_position_by_loan(loan.id)
        if position is None or not position.assets:
            return ()
        quotes = await lending.refinance_options(loan.id)
        threshold = loan.interest.rate - self._config.lending.refinance_min_improvement
        better = [q for q in quotes if q.interest_rate <= threshold + RATE_EPSILON]
        better.sort(key=lambda q: q.interest_rate)
        if better:
            logger.info(
                "Loan %s: %d refinance quote(s) beat %.2f%%",
                loan.id,
                len(better),
                loan.interest.rate * 100,
            )
        return tuple(better)

    async def _persist(
        self, loan_id: str, alerts: list[Alert], report: LoanHealthCheck
    ) -> None:
        """Append alerts whose type has no open alert on the loan yet."""
        added: list[Alert] = []

        def _append(current: Loan) -> Loan:
            open_types = {a.type for a in current.alerts if not a.acknowledged}
            fresh = tuple(a for a in alerts if a.type not in open_types)
            added.extend(fresh)
            if not fresh:
                return current
            return replace(current, alerts=current.alerts + fresh)

        loan = await self._store.update_loan(loan_id, _append)
        for alert in added:
            self._bus.publish(
                make_event(
                    EventType.ALERT_TRIGGERED,
                    self._store.clock.now(),
                    loan_id=loan.id,
                    user_id=loan.user_id,
                    data=alert_event_data(alert, report.ltv, report.health_factor),
                )
            )
