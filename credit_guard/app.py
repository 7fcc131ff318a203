"""Composition root: wires the store, bus, services and collaborators."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .config import AppConfig
from .events import EventBus
from .interfaces.credit import CreditScoreProvider, MarketSignal, RiskAnalyzer
from .interfaces.notifier import Notifier
from .interfaces.price_oracle import PriceOracle
from .interfaces.provider import ProviderAdapter
from .models import Severity
from .notifications import AlertForwarder, EmailNotifier, TelegramNotifier
from .oracles import PythOracle, StaticPriceOracle
from .resilience import RetryPolicy
from .scheduler import Clock, Scheduler
from .services import CollateralMonitor, HealthService, LendingService, UnderwritingEngine
from .store import LoanStore

logger = logging.getLogger(__name__)


def build_oracle(config: AppConfig) -> PriceOracle:
    """Pyth when feeds are configured, otherwise fixed reference prices."""
    oracle_cfg = config.price_oracle
    if oracle_cfg.provider == "pyth" and oracle_cfg.pyth.feeds:
        return PythOracle(oracle_cfg.pyth)
    logger.info("No price feeds configured, using reference prices")
    return StaticPriceOracle(
        {s: p.reference_price for s, p in config.assets.items() if p.reference_price}
    )


def build_notifiers(config: AppConfig) -> list[Notifier]:
    notifiers: list[Notifier] = []
    if config.notifications.telegram.enabled:
        notifiers.append(TelegramNotifier(config.notifications.telegram))
    if config.notifications.email.enabled:
        notifiers.append(EmailNotifier(config.notifications.email))
    return notifiers


@dataclass
class App:
    config: AppConfig
    store: LoanStore
    bus: EventBus
    scheduler: Scheduler
    lending: LendingService
    health: HealthService
    monitor: CollateralMonitor
    underwriting: UnderwritingEngine
    forwarder: AlertForwarder
    _started: bool = field(default=False, repr=False)

    def start(self) -> None:
        """Subscribe the monitor and notifications to the event bus."""
        if self._started:
            return
        self.monitor.attach(self.bus)
        self.forwarder.attach(self.bus)
        self._started = True

    async def aclose(self) -> None:
        await self.monitor.shutdown()
        await self.bus.aclose()


def build_app(
    config: AppConfig,
    credit_scores: CreditScoreProvider,
    providers: Sequence[ProviderAdapter] = (),
    oracle: PriceOracle | None = None,
    clock: Clock | None = None,
    market: MarketSignal | None = None,
    analyzer: RiskAnalyzer | None = None,
    notifiers: Sequence[Notifier] | None = None,
    retry: RetryPolicy | None = None,
) -> App:
    store = LoanStore(clock)
    bus = EventBus()
    scheduler = Scheduler(store.clock)
    oracle = oracle or build_oracle(config)
    retry = retry or RetryPolicy.from_config(config.collaborators)

    lending = LendingService(store, bus, config, oracle, retry)
    for adapter in providers:
        lending.register_provider(adapter)

    app = App(
        config=config,
        store=store,
        bus=bus,
        scheduler=scheduler,
        lending=lending,
        health=HealthService(store, bus, config, lending),
        monitor=CollateralMonitor(store, bus, config, oracle, lending, scheduler, retry),
        underwriting=UnderwritingEngine(
            store, bus, config, credit_scores, oracle, market, analyzer, retry
        ),
        forwarder=AlertForwarder(
            build_notifiers(config) if notifiers is None else notifiers,
            Severity(config.notifications.min_severity),
        ),
    )
    app.start()
    return app
