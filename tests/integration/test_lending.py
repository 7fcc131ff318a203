"""Integration tests for the lending service: limits, loan operations and lifecycle."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from credit_guard.app import App
from credit_guard.config import AppConfig
from credit_guard.errors import (
    CollaboratorError,
    NotFoundError,
    PolicyViolation,
    ValidationError,
)
from credit_guard.models import (
    CollateralOffer,
    CreateLoanRequest,
    Event,
    EventType,
    Loan,
    LoanStatus,
    PositionStatus,
    UnderwritingRequest,
)
from credit_guard.oracles import StaticPriceOracle
from credit_guard.scheduler import ManualClock

from conftest import FakeCreditScores, FakeProvider


def _with_lending(**changes) -> AppConfig:
    config = AppConfig()
    return replace(config, lending=replace(config.lending, **changes))


def _provider_calls(provider: FakeProvider, op: str) -> list[tuple]:
    return [c for c in provider.calls if c[0] == op]


async def _until_called(provider: FakeProvider, op: str) -> None:
    for _ in range(100):
        if _provider_calls(provider, op):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{op} was never called")


class TestCreateLoan:
    @pytest.mark.asyncio
    async def test_opens_loan_and_position(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        events: list[Event] = []
        app.bus.subscribe(events.append, name="recorder")

        loan = await app.lending.create_loan(btc_loan_request)
        await app.bus.join()

        assert loan.status is LoanStatus.ACTIVE
        assert loan.provider == "coinrabbit"
        assert loan.external_id == "coinrabbit-1"
        assert loan.interest.rate == 0.12
        assert loan.ltv.current == pytest.approx(0.5)
        assert loan.ltv.initial == pytest.approx(0.5)
        assert loan.history[0].type == "created"

        position = await app.store.get_position_by_loan(loan.id)
        assert position.status is PositionStatus.HEALTHY
        assert position.debt_amount == 25000.0
        assert position.total_value_usd == 50000.0

        assert [e.type for e in events] == [
            EventType.PROVIDER_CONNECTED,
            EventType.LOAN_DISBURSED,
            EventType.COLLATERAL_DEPOSITED,
        ]
        assert len(_provider_calls(provider, "create_loan")) == 1

    @pytest.mark.asyncio
    async def test_pending_loan_is_activated(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        provider.loan_status = LoanStatus.PENDING
        loan = await app.lending.create_loan(btc_loan_request)
        assert loan.status is LoanStatus.PENDING

        active = await app.lending.activate(loan.id)
        assert active.status is LoanStatus.ACTIVE
        with pytest.raises(PolicyViolation):
            await app.lending.activate(loan.id)

    @pytest.mark.asyncio
    async def test_unexpected_provider_status_is_rejected(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        provider.loan_status = LoanStatus.CLOSED
        with pytest.raises(CollaboratorError):
            await app.lending.create_loan(btc_loan_request)
        assert await app.lending.get_user_loans("user-1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"borrow_amount": 50.0},
            {"borrow_amount": 10_000_000.0},
            {"borrow_amount": float("nan")},
            {"user_id": ""},
            {"collateral": ()},
            {"collateral": (CollateralOffer("DOGE", 1000.0),)},
            {"ltv": 0.9},
        ],
    )
    async def test_invalid_requests(
        self,
        app: App,
        provider: FakeProvider,
        btc_loan_request: CreateLoanRequest,
        changes: dict,
    ) -> None:
        with pytest.raises(ValidationError):
            await app.lending.create_loan(replace(btc_loan_request, **changes))
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_ltv_above_max_is_refused_before_provider(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        with pytest.raises(PolicyViolation, match="exceeds maximum"):
            await app.lending.create_loan(replace(btc_loan_request, borrow_amount=40000.0))
        assert _provider_calls(provider, "create_loan") == []

    @pytest.mark.asyncio
    async def test_open_loan_limit(
        self, make_app, btc_loan_request: CreateLoanRequest
    ) -> None:
        app = make_app(_with_lending(max_open_loans=1))
        first = await app.lending.create_loan(btc_loan_request)

        with pytest.raises(PolicyViolation, match="open loans"):
            await app.lending.create_loan(btc_loan_request)

        await app.lending.repay(first.id, 25000.0)
        second = await app.lending.create_loan(btc_loan_request)
        assert second.status is LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_human_approval_threshold(
        self, make_app, btc_loan_request: CreateLoanRequest
    ) -> None:
        app = make_app(_with_lending(require_human_approval=True, approval_threshold=5000.0))

        with pytest.raises(PolicyViolation, match="human approval"):
            await app.lending.create_loan(btc_loan_request)
        small = await app.lending.create_loan(replace(btc_loan_request, borrow_amount=5000.0))
        assert small.principal.amount == 5000.0

    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        provider.fail_with = ConnectionError("provider down")

        with pytest.raises(CollaboratorError):
            await app.lending.create_loan(btc_loan_request)
        assert await app.store.list_loans() == []

    @pytest.mark.asyncio
    async def test_unknown_provider(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        with pytest.raises(NotFoundError):
            await app.lending.create_loan(replace(btc_loan_request, provider="nobank"))


class TestOriginate:
    @pytest.mark.asyncio
    async def test_approved_assessment_opens_loan(
        self, app: App, underwriting_request: UnderwritingRequest
    ) -> None:
        assessment = await app.underwriting.assess_loan_request("user-1", underwriting_request)

        loan = await app.lending.originate(assessment.id)

        assert loan.assessment_id == assessment.id
        assert loan.principal.amount == 20000.0
        assert loan.ltv.max == 0.65
        assert loan.ltv.current == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_assessment_originates_once(
        self, app: App, underwriting_request: UnderwritingRequest
    ) -> None:
        assessment = await app.underwriting.assess_loan_request("user-1", underwriting_request)
        await app.lending.originate(assessment.id)

        with pytest.raises(PolicyViolation, match="already originated"):
            await app.lending.originate(assessment.id)

    @pytest.mark.asyncio
    async def test_expired_assessment(
        self, app: App, clock: ManualClock, underwriting_request: UnderwritingRequest
    ) -> None:
        assessment = await app.underwriting.assess_loan_request("user-1", underwriting_request)
        await clock.advance(timedelta(hours=25).total_seconds())

        with pytest.raises(PolicyViolation, match="expired"):
            await app.lending.originate(assessment.id)

    @pytest.mark.asyncio
    async def test_declined_assessment(
        self,
        app: App,
        credit_scores: FakeCreditScores,
        underwriting_request: UnderwritingRequest,
    ) -> None:
        credit_scores.score = 100
        assessment = await app.underwriting.assess_loan_request("user-1", underwriting_request)

        with pytest.raises(PolicyViolation, match="declined"):
            await app.lending.originate(assessment.id)


class TestRepayment:
    @pytest.mark.asyncio
    async def test_interest_is_paid_first(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        loan = await app.lending.accrue_interest(loan.id, 365)
        assert loan.interest.accrued == pytest.approx(3000.0)

        loan = await app.lending.repay(loan.id, 1000.0)

        assert loan.interest.paid == pytest.approx(1000.0)
        assert loan.principal.remaining == 25000.0
        assert loan.history[-1].data == {"amount": 1000.0, "interest": 1000.0, "principal": 0.0}
        assert _provider_calls(provider, "repay") == [("repay", "coinrabbit-1", 1000.0)]

    @pytest.mark.asyncio
    async def test_full_repayment_closes_loan(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        events: list[Event] = []
        app.bus.subscribe(events.append, name="recorder", types=[EventType.LOAN_CLOSED])
        loan = await app.lending.create_loan(btc_loan_request)
        await app.lending.accrue_interest(loan.id, 365)

        closed = await app.lending.repay(loan.id, 28000.0)
        await app.bus.join()

        assert closed.status is LoanStatus.CLOSED
        assert closed.closed_at is not None
        assert closed.principal.remaining == 0.0
        assert [e.data["reason"] for e in events] == ["repaid"]

    @pytest.mark.asyncio
    async def test_overpayment_rejected(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        with pytest.raises(ValidationError, match="exceeds outstanding"):
            await app.lending.repay(loan.id, 25001.0)
        with pytest.raises(ValidationError):
            await app.lending.repay(loan.id, 0.0)
        assert _provider_calls(provider, "repay") == []

    @pytest.mark.asyncio
    async def test_no_repayment_while_liquidation_pending(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        await app.store.transition_loan(loan.id, LoanStatus.ACTIVE, LoanStatus.LIQUIDATION_PENDING)

        with pytest.raises(PolicyViolation):
            await app.lending.repay(loan.id, 100.0)

    @pytest.mark.asyncio
    async def test_concurrent_repayments_move_money_once(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        results = await asyncio.gather(
            app.lending.repay(loan.id, 15000.0),
            app.lending.repay(loan.id, 15000.0),
            return_exceptions=True,
        )

        repaid = [r for r in results if isinstance(r, Loan)]
        refused = [r for r in results if isinstance(r, ValidationError)]
        assert len(repaid) == 1 and len(refused) == 1
        assert _provider_calls(provider, "repay") == [("repay", "coinrabbit-1", 15000.0)]
        stored = await app.store.get_loan(loan.id)
        assert stored.status is LoanStatus.ACTIVE
        assert stored.principal.remaining == pytest.approx(10000.0)

    @pytest.mark.asyncio
    async def test_status_change_waits_for_repayment_in_flight(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        provider.gate = asyncio.Event()

        repaying = asyncio.create_task(app.lending.repay(loan.id, 5000.0))
        await _until_called(provider, "repay")
        moving = asyncio.create_task(
            app.store.transition_loan(loan.id, LoanStatus.ACTIVE, LoanStatus.LIQUIDATION_PENDING)
        )
        for _ in range(5):
            await asyncio.sleep(0)
        assert not moving.done()

        provider.gate.set()
        repaid = await repaying
        moved = await moving

        assert repaid.principal.remaining == pytest.approx(20000.0)
        assert moved is not None
        assert moved.status is LoanStatus.LIQUIDATION_PENDING
        stored = await app.store.get_loan(loan.id)
        assert stored.principal.remaining == pytest.approx(20000.0)
        assert [h.type for h in stored.history][-2:] == ["payment_made", "status_changed"]

    @pytest.mark.asyncio
    async def test_negative_accrual_rejected(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        with pytest.raises(ValidationError):
            await app.lending.accrue_interest(loan.id, -1)


class TestCollateral:
    @pytest.mark.asyncio
    async def test_add_new_asset_lowers_ltv(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        position = await app.lending.add_collateral(loan.id, "ETH", 10.0)

        assert position.asset("ETH").value_usd == 25000.0
        assert position.metrics.current_ltv == pytest.approx(25000 / 75000)
        assert (await app.store.get_loan(loan.id)).ltv.current == pytest.approx(25000 / 75000)
        assert _provider_calls(provider, "add_collateral") == [
            ("add_collateral", "coinrabbit-1", "ETH", 10.0)
        ]

    @pytest.mark.asyncio
    async def test_safe_withdrawal(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        position = await app.lending.withdraw_collateral(loan.id, "BTC", 0.2)

        assert position.asset("BTC").amount == pytest.approx(0.8)
        assert position.metrics.current_ltv == pytest.approx(0.625)
        assert position.history[-1].type == "withdrawn"

    @pytest.mark.asyncio
    async def test_withdrawal_above_safe_zone_refused(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        with pytest.raises(PolicyViolation, match="safe zone"):
            await app.lending.withdraw_collateral(loan.id, "BTC", 0.4)

        assert _provider_calls(provider, "withdraw_collateral") == []
        position = await app.store.get_position_by_loan(loan.id)
        assert position.asset("BTC").amount == 1.0

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_recheck_safe_zone(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        results = await asyncio.gather(
            app.lending.withdraw_collateral(loan.id, "BTC", 0.2),
            app.lending.withdraw_collateral(loan.id, "BTC", 0.2),
            return_exceptions=True,
        )

        assert sum(isinstance(r, PolicyViolation) for r in results) == 1
        assert len(_provider_calls(provider, "withdraw_collateral")) == 1
        position = await app.store.get_position_by_loan(loan.id)
        assert position.asset("BTC").amount == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_withdraw_unknown_or_excess_asset(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        with pytest.raises(ValidationError):
            await app.lending.withdraw_collateral(loan.id, "ETH", 1.0)
        with pytest.raises(ValidationError):
            await app.lending.withdraw_collateral(loan.id, "BTC", 2.0)

    @pytest.mark.asyncio
    async def test_no_collateral_changes_on_terminal_loan(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        await app.lending.cancel(loan.id)
        with pytest.raises(PolicyViolation):
            await app.lending.add_collateral(loan.id, "BTC", 0.1)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_and_default_are_terminal(
        self, app: App, btc_loan_request: CreateLoanRequest
    ) -> None:
        first = await app.lending.create_loan(btc_loan_request)
        second = await app.lending.create_loan(btc_loan_request)

        cancelled = await app.lending.cancel(first.id, reason="user request")
        defaulted = await app.lending.mark_defaulted(second.id)

        assert cancelled.status is LoanStatus.CANCELLED
        assert cancelled.history[-1].description == "user request"
        assert defaulted.status is LoanStatus.DEFAULTED
        with pytest.raises(PolicyViolation, match="already"):
            await app.lending.cancel(first.id)

    @pytest.mark.asyncio
    async def test_partial_liquidation_then_close(
        self, app: App, oracle: StaticPriceOracle, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)
        position = await app.store.get_position_by_loan(loan.id)

        with pytest.raises(PolicyViolation, match="not pending liquidation"):
            await app.lending.record_liquidation(loan.id, fully=False)

        oracle.set_price("BTC", 25000 / 0.9)
        await app.monitor.check_position(position.id)
        partial = await app.lending.record_liquidation(loan.id, fully=False)
        assert partial.status is LoanStatus.PARTIALLY_LIQUIDATED
        assert (await app.store.get_position(position.id)).status is not PositionStatus.LIQUIDATED

        closed = await app.lending.close_liquidated(loan.id)
        assert closed.status is LoanStatus.CLOSED
        with pytest.raises(PolicyViolation):
            await app.lending.close_liquidated(loan.id)

    @pytest.mark.asyncio
    async def test_reads(self, app: App, btc_loan_request: CreateLoanRequest) -> None:
        first = await app.lending.create_loan(btc_loan_request)
        second = await app.lending.create_loan(btc_loan_request)
        await app.lending.cancel(second.id)

        assert await app.lending.get_loan(first.id) == await app.store.get_loan(first.id)
        assert {l.id for l in await app.lending.get_user_loans("user-1")} == {first.id, second.id}
        assert [l.id for l in await app.lending.get_active_loans()] == [first.id]
        with pytest.raises(NotFoundError):
            await app.lending.get_loan("loan-missing")


class TestQuotesAndRefinance:
    @pytest.mark.asyncio
    async def test_best_quote_skips_failing_provider(self, app: App) -> None:
        cheap = FakeProvider("cheapbank", rate=0.08)
        broken = FakeProvider("brokenbank", rate=0.01)
        broken.fail_with = ConnectionError("down")
        app.lending.register_provider(cheap)
        app.lending.register_provider(broken)

        quotes = await app.lending.get_all_quotes("BTC", 1.0, "USDT")
        best = await app.lending.get_best_quote("BTC", 1.0, "USDT")

        assert {q.provider for q in quotes} == {"coinrabbit", "cheapbank"}
        assert best is not None and best.provider == "cheapbank"

    @pytest.mark.asyncio
    async def test_quote_validation(self, app: App) -> None:
        with pytest.raises(ValidationError):
            await app.lending.get_quote("BTC", 0.0, "USDT")
        with pytest.raises(ValidationError):
            await app.lending.get_quote("BTC", 1.0, "USDT", ltv=0.9)

    @pytest.mark.asyncio
    async def test_refinance_moves_principal(
        self, make_app, btc_loan_request: CreateLoanRequest
    ) -> None:
        app = make_app(_with_lending(max_open_loans=1))
        app.lending.register_provider(FakeProvider("cheapbank", rate=0.08))
        loan = await app.lending.create_loan(btc_loan_request)
        await app.lending.repay(loan.id, 5000.0)

        new_loan = await app.lending.refinance(loan.id, "cheapbank")

        assert new_loan.provider == "cheapbank"
        assert new_loan.interest.rate == 0.08
        assert new_loan.principal.amount == 20000.0
        old = await app.store.get_loan(loan.id)
        assert old.status is LoanStatus.CLOSED
        assert old.history[-1].data == {"new_loan_id": new_loan.id, "new_provider": "cheapbank"}

    @pytest.mark.asyncio
    async def test_refinance_options_use_main_collateral(
        self, app: App, provider: FakeProvider, btc_loan_request: CreateLoanRequest
    ) -> None:
        loan = await app.lending.create_loan(btc_loan_request)

        quotes = await app.lending.refinance_options(loan.id)

        assert [q.provider for q in quotes] == ["coinrabbit"]
        assert _provider_calls(provider, "get_quote") == [("get_quote", "BTC", 1.0, "USDT", None)]


class TestProviders:
    @pytest.mark.asyncio
    async def test_health_check(self, app: App, provider: FakeProvider) -> None:
        broken = FakeProvider("brokenbank")
        broken.fail_with = ConnectionError("down")
        app.lending.register_provider(broken)

        assert await app.lending.health_check() == {"brokenbank": False, "coinrabbit": True}
        assert app.lending.providers == ["brokenbank", "coinrabbit"]

    @pytest.mark.asyncio
    async def test_stats(
        self, app: App, oracle: StaticPriceOracle, btc_loan_request: CreateLoanRequest
    ) -> None:
        healthy = await app.lending.create_loan(btc_loan_request)
        at_risk = await app.lending.create_loan(replace(btc_loan_request, borrow_amount=35000.0))
        defaulted = await app.lending.create_loan(btc_loan_request)
        await app.lending.mark_defaulted(defaulted.id)
        oracle.set_price("BTC", 40000.0)
        await app.monitor.check_position((await app.store.get_position_by_loan(at_risk.id)).id)
        await app.monitor.check_position((await app.store.get_position_by_loan(healthy.id)).id)

        stats = await app.lending.get_stats()

        assert stats.total_loans == 3
        assert stats.active_loans == 1
        assert stats.loans_at_risk == 1
        assert stats.default_rate == pytest.approx(1 / 3)
        assert stats.total_borrowed_usd == 85000.0
        assert stats.average_ltv == pytest.approx(25000 / 40000)
        assert stats.average_interest_rate == 0.12
