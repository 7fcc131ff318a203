"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import AutoTopUpConfig, LTVThresholds, StressScenario
from .policy import DEFAULT_RISK_MODELS, RiskModelPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertThresholdsConfig:
    margin_warning: float = 0.7
    margin_critical: float = 0.8
    liquidation_imminent: float = 0.85
    volatility_spike: float = 0.3


@dataclass(frozen=True)
class MonitorConfig:
    check_interval_seconds: float = 60.0
    check_timeout_seconds: float = 30.0
    alert_thresholds: AlertThresholdsConfig = field(default_factory=AlertThresholdsConfig)
    concentration_limit: float = 0.8
    auto_start: bool = True
    auto_top_up: AutoTopUpConfig = field(default_factory=AutoTopUpConfig)

    @property
    def thresholds(self) -> LTVThresholds:
        return LTVThresholds(
            safe_zone=self.alert_thresholds.margin_warning,
            margin_call=self.alert_thresholds.margin_critical,
            liquidation=self.alert_thresholds.liquidation_imminent,
        )


@dataclass(frozen=True)
class LendingConfig:
    default_provider: str = "coinrabbit"
    supported_assets: tuple[str, ...] = ("BTC", "ETH", "TON", "USDT", "USDC")
    min_loan_amount: float = 100.0
    max_loan_amount: float = 5_000_000.0
    max_ltv: float = 0.75
    default_ltv: float = 0.5
    safe_zone: float = 0.7
    margin_call_threshold: float = 0.8
    liquidation_threshold: float = 0.85
    auto_refinance_enabled: bool = True
    refinance_min_improvement: float = 0.01
    require_human_approval: bool = False
    approval_threshold: float = 5000.0
    max_open_loans: int = 10
    payment_due_days: int = 3

    @property
    def thresholds(self) -> LTVThresholds:
        return LTVThresholds(
            safe_zone=self.safe_zone,
            margin_call=self.margin_call_threshold,
            liquidation=self.liquidation_threshold,
        )


DEFAULT_STRESS_SCENARIOS: tuple[StressScenario, ...] = (
    StressScenario("mild_correction", -0.20, "20% market-wide price drop"),
    StressScenario("bear_market", -0.40, "40% drawdown"),
    StressScenario("crash", -0.60, "60% crash"),
    StressScenario("black_swan", -0.80, "80% collapse"),
)


@dataclass(frozen=True)
class UnderwritingConfig:
    risk_model: str = "moderate"
    horizon_days: int = 30
    loss_given_default: float = 0.15
    validity_hours: float = 24.0
    credit_score_staleness_hours: float = 24.0
    base_interest_rate: float = 0.12
    market_condition: float = 0.5
    max_exposure: float = 1_000_000.0
    analyzer_enabled: bool = True
    stress_scenarios: tuple[StressScenario, ...] = DEFAULT_STRESS_SCENARIOS


@dataclass(frozen=True)
class AssetProfile:
    volatility: float = 0.1
    liquid: bool = False
    reference_price: float | None = None


def _default_assets() -> dict[str, AssetProfile]:
    return {
        "BTC": AssetProfile(0.04, True, 65000.0),
        "ETH": AssetProfile(0.05, True, 3500.0),
        "TON": AssetProfile(0.08, True, 6.5),
        "BNB": AssetProfile(0.05, False, 580.0),
        "SOL": AssetProfile(0.08, False, 150.0),
        "USDT": AssetProfile(0.001, True, 1.0),
        "USDC": AssetProfile(0.001, True, 1.0),
    }


@dataclass(frozen=True)
class CollaboratorsConfig:
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 10.0


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0
    max_price_age_seconds: float | None = 120.0


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    # Alerts below this severity are not forwarded.
    min_severity: str = "warning"


@dataclass(frozen=True)
class AppConfig:
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    lending: LendingConfig = field(default_factory=LendingConfig)
    underwriting: UnderwritingConfig = field(default_factory=UnderwritingConfig)
    risk_models: dict[str, RiskModelPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RISK_MODELS)
    )
    assets: dict[str, AssetProfile] = field(default_factory=_default_assets)
    default_asset: AssetProfile = field(default_factory=AssetProfile)
    collaborators: CollaboratorsConfig = field(default_factory=CollaboratorsConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    def asset_profile(self, symbol: str) -> AssetProfile:
        return self.assets.get(symbol, self.default_asset)

    @property
    def risk_policy(self) -> RiskModelPolicy:
        return self.risk_models[self.underwriting.risk_model]


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_alert_thresholds(raw: dict[str, Any]) -> AlertThresholdsConfig:
    d = AlertThresholdsConfig()
    return AlertThresholdsConfig(
        margin_warning=float(raw.get("margin_warning", d.margin_warning)),
        margin_critical=float(raw.get("margin_critical", d.margin_critical)),
        liquidation_imminent=float(
            raw.get("liquidation_imminent", d.liquidation_imminent)
        ),
        volatility_spike=float(raw.get("volatility_spike", d.volatility_spike)),
    )


def _build_auto_top_up(raw: dict[str, Any]) -> AutoTopUpConfig:
    d = AutoTopUpConfig()
    return AutoTopUpConfig(
        enabled=bool(raw.get("enabled", d.enabled)),
        trigger_threshold=float(raw.get("trigger_threshold", d.trigger_threshold)),
        target_ltv=float(raw.get("target_ltv", d.target_ltv)),
        top_up_asset=raw.get("top_up_asset", d.top_up_asset),
        min_top_up_amount=float(raw.get("min_top_up_amount", d.min_top_up_amount)),
        max_top_up_amount=float(raw.get("max_top_up_amount", d.max_top_up_amount)),
    )


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    d = MonitorConfig()
    return MonitorConfig(
        check_interval_seconds=float(
            raw.get("check_interval_seconds", d.check_interval_seconds)
        ),
        check_timeout_seconds=float(
            raw.get("check_timeout_seconds", d.check_timeout_seconds)
        ),
        alert_thresholds=_build_alert_thresholds(raw.get("alert_thresholds", {})),
        concentration_limit=float(raw.get("concentration_limit", d.concentration_limit)),
        auto_start=bool(raw.get("auto_start", d.auto_start)),
        auto_top_up=_build_auto_top_up(raw.get("auto_top_up", {})),
    )


def _build_lending(raw: dict[str, Any]) -> LendingConfig:
    d = LendingConfig()
    return LendingConfig(
        default_provider=raw.get("default_provider", d.default_provider),
        supported_assets=tuple(raw.get("supported_assets", d.supported_assets)),
        min_loan_amount=float(raw.get("min_loan_amount", d.min_loan_amount)),
        max_loan_amount=float(raw.get("max_loan_amount", d.max_loan_amount)),
        max_ltv=float(raw.get("max_ltv", d.max_ltv)),
        default_ltv=float(raw.get("default_ltv", d.default_ltv)),
        safe_zone=float(raw.get("safe_zone", d.safe_zone)),
        margin_call_threshold=float(
            raw.get("margin_call_threshold", d.margin_call_threshold)
        ),
        liquidation_threshold=float(
            raw.get("liquidation_threshold", d.liquidation_threshold)
        ),
        auto_refinance_enabled=bool(
            raw.get("auto_refinance_enabled", d.auto_refinance_enabled)
        ),
        refinance_min_improvement=float(
            raw.get("refinance_min_improvement", d.refinance_min_improvement)
        ),
        require_human_approval=bool(
            raw.get("require_human_approval", d.require_human_approval)
        ),
        approval_threshold=float(raw.get("approval_threshold", d.approval_threshold)),
        max_open_loans=int(raw.get("max_open_loans", d.max_open_loans)),
        payment_due_days=int(raw.get("payment_due_days", d.payment_due_days)),
    )


def _build_stress_scenarios(raw: list[dict[str, Any]]) -> tuple[StressScenario, ...]:
    return tuple(
        StressScenario(
            name=s["name"],
            price_shock=float(s["price_shock"]),
            description=s.get("description", ""),
        )
        for s in raw
    )


def _build_underwriting(raw: dict[str, Any]) -> UnderwritingConfig:
    d = UnderwritingConfig()
    scenarios = d.stress_scenarios
    if "stress_scenarios" in raw:
        scenarios = _build_stress_scenarios(raw["stress_scenarios"] or [])
    return UnderwritingConfig(
        risk_model=raw.get("risk_model", d.risk_model),
        horizon_days=int(raw.get("horizon_days", d.horizon_days)),
        loss_given_default=float(raw.get("loss_given_default", d.loss_given_default)),
        validity_hours=float(raw.get("validity_hours", d.validity_hours)),
        credit_score_staleness_hours=float(
            raw.get("credit_score_staleness_hours", d.credit_score_staleness_hours)
        ),
        base_interest_rate=float(raw.get("base_interest_rate", d.base_interest_rate)),
        market_condition=float(raw.get("market_condition", d.market_condition)),
        max_exposure=float(raw.get("max_exposure", d.max_exposure)),
        analyzer_enabled=bool(raw.get("analyzer_enabled", d.analyzer_enabled)),
        stress_scenarios=scenarios,
    )


def _build_risk_models(raw: dict[str, Any]) -> dict[str, RiskModelPolicy]:
    models = dict(DEFAULT_RISK_MODELS)
    for name, cfg in raw.items():
        models[name] = RiskModelPolicy(
            name=name,
            max_risk_score=int(cfg["max_risk_score"]),
            min_credit_score=int(cfg["min_credit_score"]),
        )
    return models


def _build_asset_profile(raw: dict[str, Any]) -> AssetProfile:
    return AssetProfile(
        volatility=float(raw.get("volatility", AssetProfile.volatility)),
        liquid=bool(raw.get("liquid", False)),
        reference_price=_optional_float(raw.get("reference_price")),
    )


def _build_assets(raw: dict[str, Any]) -> dict[str, AssetProfile]:
    assets = _default_assets()
    for symbol, cfg in raw.items():
        assets[symbol] = _build_asset_profile(cfg or {})
    return assets


def _build_collaborators(raw: dict[str, Any]) -> CollaboratorsConfig:
    d = CollaboratorsConfig()
    return CollaboratorsConfig(
        timeout_seconds=float(raw.get("timeout_seconds", d.timeout_seconds)),
        max_attempts=int(raw.get("max_attempts", d.max_attempts)),
        backoff_min_seconds=float(raw.get("backoff_min_seconds", d.backoff_min_seconds)),
        backoff_max_seconds=float(raw.get("backoff_max_seconds", d.backoff_max_seconds)),
    )


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            timeout_seconds=float(pyth_raw.get("timeout_seconds", 10.0)),
            max_price_age_seconds=_optional_float(pyth_raw.get("max_price_age_seconds", 120.0)),
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
        email=EmailConfig(
            enabled=bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
        min_severity=raw.get("min_severity", "warning"),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        monitor=_build_monitor(raw.get("monitor", {})),
        lending=_build_lending(raw.get("lending", {})),
        underwriting=_build_underwriting(raw.get("underwriting", {})),
        risk_models=_build_risk_models(raw.get("risk_models", {})),
        assets=_build_assets(raw.get("assets", {})),
        collaborators=_build_collaborators(raw.get("collaborators", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _check_ladder(name: str, t: LTVThresholds) -> None:
    if not 0 < t.safe_zone < t.margin_call < t.liquidation <= 1:
        raise ValueError(
            f"{name} thresholds must satisfy 0 < safe_zone < margin_call < "
            f"liquidation <= 1 (got {t.safe_zone}, {t.margin_call}, {t.liquidation})"
        )


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    _check_ladder("monitor.alert_thresholds", cfg.monitor.thresholds)
    _check_ladder("lending", cfg.lending.thresholds)

    if cfg.monitor.check_interval_seconds <= 0:
        raise ValueError("monitor.check_interval_seconds must be positive")

    top_up = cfg.monitor.auto_top_up
    if top_up.min_top_up_amount > top_up.max_top_up_amount:
        raise ValueError("auto_top_up.min_top_up_amount exceeds max_top_up_amount")
    if not 0 < top_up.target_ltv < top_up.trigger_threshold:
        raise ValueError("auto_top_up.target_ltv must be below trigger_threshold")

    if cfg.lending.min_loan_amount > cfg.lending.max_loan_amount:
        raise ValueError("lending.min_loan_amount exceeds max_loan_amount")

    if cfg.underwriting.risk_model not in cfg.risk_models:
        raise ValueError(
            f"Unknown risk model '{cfg.underwriting.risk_model}'"
        )
    if not cfg.underwriting.stress_scenarios:
        raise ValueError("At least one stress scenario must be configured")
    for s in cfg.underwriting.stress_scenarios:
        if s.price_shock < -1:
            raise ValueError(f"Stress scenario '{s.name}' shock below -100%")

    if cfg.collaborators.max_attempts < 1:
        raise ValueError("collaborators.max_attempts must be at least 1")

    if cfg.notifications.min_severity not in ("info", "warning", "critical"):
        raise ValueError(
            f"notifications.min_severity must be info, warning or critical "
            f"(got '{cfg.notifications.min_severity}')"
        )
