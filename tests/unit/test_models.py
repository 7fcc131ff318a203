"""Unit tests for data models and the loan state machine."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from credit_guard.models import (
    LOAN_TRANSITIONS,
    TERMINAL_LOAN_STATUSES,
    Alert,
    AlertType,
    CollateralAsset,
    CollateralPosition,
    LoanStatus,
    LTVInfo,
    LTVThresholds,
    PositionMetrics,
    PositionStatus,
    RepaymentSchedule,
    ScheduledPayment,
    Severity,
    can_transition,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestLoanStateMachine:
    def test_every_status_has_transitions(self) -> None:
        assert set(LOAN_TRANSITIONS) == set(LoanStatus)

    @pytest.mark.parametrize("status", sorted(TERMINAL_LOAN_STATUSES, key=lambda s: s.value))
    def test_terminal_states_are_absorbing(self, status: LoanStatus) -> None:
        assert all(not can_transition(status, target) for target in LoanStatus)

    @pytest.mark.parametrize(
        "current",
        [s for s in LoanStatus if s not in TERMINAL_LOAN_STATUSES],
    )
    def test_default_and_cancel_reachable_from_open_states(self, current: LoanStatus) -> None:
        assert can_transition(current, LoanStatus.DEFAULTED)
        assert can_transition(current, LoanStatus.CANCELLED)

    def test_margin_call_round_trip(self) -> None:
        assert can_transition(LoanStatus.ACTIVE, LoanStatus.MARGIN_CALL)
        assert can_transition(LoanStatus.MARGIN_CALL, LoanStatus.ACTIVE)

    def test_liquidation_path(self) -> None:
        assert can_transition(LoanStatus.MARGIN_CALL, LoanStatus.LIQUIDATION_PENDING)
        assert can_transition(LoanStatus.LIQUIDATION_PENDING, LoanStatus.FULLY_LIQUIDATED)
        assert can_transition(LoanStatus.FULLY_LIQUIDATED, LoanStatus.CLOSED)

    def test_illegal_shortcuts(self) -> None:
        assert not can_transition(LoanStatus.PENDING, LoanStatus.MARGIN_CALL)
        assert not can_transition(LoanStatus.LIQUIDATION_PENDING, LoanStatus.ACTIVE)
        assert not can_transition(LoanStatus.LIQUIDATION_PENDING, LoanStatus.CLOSED)
        assert not can_transition(LoanStatus.ACTIVE, LoanStatus.FULLY_LIQUIDATED)


class TestRecords:
    def test_alert_acknowledged(self) -> None:
        alert = Alert("a-1", AlertType.MARGIN_WARNING, Severity.WARNING, "m", NOW)
        assert not alert.acknowledged
        with pytest.raises(AttributeError):
            alert.acknowledged_at = NOW  # type: ignore[misc]

    def test_ltv_info_thresholds(self) -> None:
        info = LTVInfo(current=0.5, initial=0.5, max=0.75)
        assert info.thresholds == LTVThresholds(0.7, 0.8, 0.85)

    def test_next_payment_skips_paid(self) -> None:
        schedule = RepaymentSchedule(
            type="installment",
            payments=(
                ScheduledPayment("p1", NOW, 100.0, status="paid"),
                ScheduledPayment("p3", NOW + timedelta(days=60), 100.0),
                ScheduledPayment("p2", NOW + timedelta(days=30), 100.0),
            ),
        )
        assert schedule.next_payment is not None
        assert schedule.next_payment.id == "p2"
        assert RepaymentSchedule().next_payment is None


class TestCollateralPosition:
    def test_lookup_helpers(self) -> None:
        position = CollateralPosition(
            id="pos-1",
            loan_id="loan-1",
            user_id="user-1",
            status=PositionStatus.HEALTHY,
            assets=(CollateralAsset("BTC", 1.0, 50000.0, 50000.0, 1.0),),
            total_value_usd=50000.0,
            debt_asset="USDT",
            debt_amount=25000.0,
            thresholds=LTVThresholds(),
            metrics=PositionMetrics(),
            created_at=NOW,
            updated_at=NOW,
            debt_price_usd=1.001,
        )
        assert position.symbols == ["BTC"]
        assert position.asset("BTC") is not None
        assert position.asset("ETH") is None
        assert position.debt_value_usd == pytest.approx(25025.0)
