"""Shared test fixtures and fakes."""
from __future__ import annotations

import asyncio
import textwrap
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from credit_guard.app import App, build_app
from credit_guard.config import AppConfig
from credit_guard.models import (
    CollateralOffer,
    CreateLoanRequest,
    CreditScore,
    LoanStatus,
    ProviderLoan,
    Quote,
    UnderwritingRequest,
)
from credit_guard.oracles import StaticPriceOracle
from credit_guard.resilience import RetryPolicy
from credit_guard.scheduler import ManualClock

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory lending provider recording every call."""

    def __init__(self, name: str = "coinrabbit", rate: float = 0.12) -> None:
        self._name = name
        self.rate = rate
        self._connected = False
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.loan_status = LoanStatus.ACTIVE
        # When set, money-moving calls wait on it after recording themselves.
        self.gate: asyncio.Event | None = None
        self._seq = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def health_check(self) -> bool:
        return self.fail_with is None

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    async def _hold(self) -> None:
        if self.gate is not None:
            await self.gate.wait()

    async def get_quote(
        self,
        collateral_asset: str,
        collateral_amount: float,
        borrow_asset: str,
        ltv: float | None = None,
    ) -> Quote:
        self._record("get_quote", collateral_asset, collateral_amount, borrow_asset, ltv)
        return Quote(
            provider=self._name,
            collateral_asset=collateral_asset,
            collateral_amount=collateral_amount,
            borrow_asset=borrow_asset,
            borrow_amount=collateral_amount * 0.5,
            ltv=ltv or 0.5,
            interest_rate=self.rate,
        )

    async def create_loan(self, request: CreateLoanRequest) -> ProviderLoan:
        self._record("create_loan", request)
        self._seq += 1
        return ProviderLoan(
            external_id=f"{self._name}-{self._seq}",
            interest_rate=self.rate,
            status=self.loan_status,
        )

    async def repay(self, external_id: str, amount: float) -> None:
        self._record("repay", external_id, amount)
        await self._hold()

    async def add_collateral(self, external_id: str, asset: str, amount: float) -> None:
        self._record("add_collateral", external_id, asset, amount)
        await self._hold()

    async def withdraw_collateral(self, external_id: str, asset: str, amount: float) -> None:
        self._record("withdraw_collateral", external_id, asset, amount)
        await self._hold()


class FakeCreditScores:
    def __init__(self, score: int = 700, grade: str = "B", updated_at: datetime = START) -> None:
        self.score = score
        self.grade = grade
        self.updated_at = updated_at

    async def get_score(self, user_id: str) -> CreditScore:
        return CreditScore(
            user_id=user_id, score=self.score, grade=self.grade, updated_at=self.updated_at
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def app_config() -> AppConfig:
    return AppConfig()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture()
def fast_retry() -> RetryPolicy:
    return RetryPolicy(timeout=1.0, max_attempts=1, backoff_min=0, backoff_max=0)


@pytest.fixture()
def sample_prices() -> dict[str, float]:
    return {"BTC": 50000.0, "ETH": 2500.0, "TON": 5.0, "USDT": 1.0, "USDC": 1.0}


@pytest.fixture()
def oracle(sample_prices: dict[str, float]) -> StaticPriceOracle:
    return StaticPriceOracle(sample_prices)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def credit_scores() -> FakeCreditScores:
    return FakeCreditScores()


@pytest_asyncio.fixture()
async def make_app(
    credit_scores: FakeCreditScores,
    provider: FakeProvider,
    oracle: StaticPriceOracle,
    clock: ManualClock,
    fast_retry: RetryPolicy,
):
    """Factory for apps sharing the test's fakes; every app is closed at teardown."""
    built: list[App] = []

    def _make(config: AppConfig | None = None, **kwargs) -> App:
        kwargs.setdefault("notifiers", [])
        application = build_app(
            config or AppConfig(),
            credit_scores,
            providers=[provider],
            oracle=oracle,
            clock=clock,
            retry=fast_retry,
            **kwargs,
        )
        built.append(application)
        return application

    yield _make
    for application in built:
        await application.aclose()


@pytest.fixture()
def app(make_app, app_config: AppConfig) -> App:
    return make_app(app_config)


@pytest.fixture()
def btc_loan_request() -> CreateLoanRequest:
    """25,000 USDT against 1 BTC at $50,000: LTV 0.5."""
    return CreateLoanRequest(
        user_id="user-1",
        collateral=(CollateralOffer("BTC", 1.0),),
        borrow_asset="USDT",
        borrow_amount=25000.0,
    )


@pytest.fixture()
def underwriting_request() -> UnderwritingRequest:
    return UnderwritingRequest(
        requested_amount=20000.0,
        requested_asset="USDT",
        collateral=(CollateralOffer("BTC", 0.5), CollateralOffer("ETH", 10.0)),
    )


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    monitor:
      check_interval_seconds: 30
      alert_thresholds:
        margin_warning: 0.6
        margin_critical: 0.75
        liquidation_imminent: 0.9
      auto_top_up:
        enabled: true
        min_top_up_amount: 50
    lending:
      max_ltv: 0.7
      supported_assets: [BTC, USDT]
      max_open_loans: 2
    underwriting:
      risk_model: conservative
      stress_scenarios:
        - {name: dip, price_shock: -0.1}
        - {name: crash, price_shock: -0.5, description: "half"}
    risk_models:
      custom: {max_risk_score: 45, min_credit_score: 450}
    assets:
      DOGE: {volatility: 0.12, reference_price: 0.1}
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {BTC: "bbb"}
    notifications:
      min_severity: critical
      telegram:
        enabled: true
        alert_bot_token: "${TEST_ALERT_TOKEN}"
        log_bot_token: "tok2"
        chat_id: 999
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
