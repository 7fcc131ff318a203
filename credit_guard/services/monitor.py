"""Collateral monitoring: one ticker per position, alerts and automation."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta

from .. import risk
from ..config import AppConfig
from ..errors import CollaboratorError, NotFoundError, PolicyViolation, ValidationError
from ..events import EventBus, make_event
from ..interfaces.price_oracle import PriceOracle
from ..models import (
    SEVERITY_RANK,
    Alert,
    AlertType,
    AutoRebalanceConfig,
    AutoTopUpConfig,
    AutoWithdrawConfig,
    CollateralAsset,
    CollateralPosition,
    CollateralStats,
    Event,
    EventType,
    HealthVerdict,
    Loan,
    LoanStatus,
    MonitoringState,
    PositionStatus,
    Severity,
)
from ..resilience import RetryPolicy, call_collaborator
from ..scheduler import Scheduler
from ..store import LoanStore, attached_position, history_entry, new_id, refresh_position
from .health import alert_event_data, assess
from .lending import LendingService
from .pricing import fetch_prices

logger = logging.getLogger(__name__)

STATUS_ALERTS: dict[PositionStatus, tuple[AlertType, Severity, str]] = {
    PositionStatus.WARNING: (
        AlertType.MARGIN_WARNING,
        Severity.WARNING,
        "Consider adding collateral or reducing the loan",
    ),
    PositionStatus.CRITICAL: (
        AlertType.MARGIN_CRITICAL,
        Severity.CRITICAL,
        "Add collateral or repay to avoid liquidation",
    ),
    PositionStatus.LIQUIDATING: (
        AlertType.LIQUIDATION_RISK,
        Severity.CRITICAL,
        "Add collateral or repay immediately",
    ),
}

FLAG_VOLATILITY = "volatility_spike"
FLAG_CONCENTRATION = "concentration_risk"

# Allocation target weights must sum to 1 within this tolerance.
WEIGHT_TOLERANCE = 0.01

_STOP_EVENTS = frozenset(
    {
        EventType.LOAN_CLOSED,
        EventType.LOAN_CANCELLED,
        EventType.LOAN_DEFAULTED,
        EventType.COLLATERAL_LIQUIDATED,
    }
)


class CollateralMonitor:
    """Periodic health checks for collateral positions."""

    def __init__(
        self,
        store: LoanStore,
        bus: EventBus,
        config: AppConfig,
        oracle: PriceOracle,
        lending: LendingService,
        scheduler: Scheduler | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config
        self._cfg = config.monitor
        self._oracle = oracle
        self._lending = lending
        self._scheduler = scheduler or Scheduler(store.clock)
        self._retry = retry or RetryPolicy.from_config(config.collaborators)
        self._check_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self, bus: EventBus) -> None:
        """Follow loan lifecycle events: start on deposit, stop on close."""
        bus.subscribe(
            self._on_event,
            name="collateral-monitor",
            types=_STOP_EVENTS | {EventType.COLLATERAL_DEPOSITED},
        )

    async def _on_event(self, event: Event) -> None:
        if event.loan_id is None:
            return
        position = await self._store.get_position_by_loan(event.loan_id)
        if position is None:
            return
        if event.type is EventType.COLLATERAL_DEPOSITED:
            loan = await self._store.get_loan(event.loan_id)
            if (
                self._cfg.auto_start
                and position.monitoring.enabled
                and not loan.is_terminal
                and position.status is not PositionStatus.LIQUIDATED
                and not self.is_monitoring(position.id)
            ):
                await self.start_monitoring(position.id)
        elif self.is_monitoring(position.id) or position.monitoring.enabled:
            await self.stop_monitoring(position.id)

    def is_monitoring(self, position_id: str) -> bool:
        return self._scheduler.is_scheduled(position_id)

    @property
    def monitored_positions(self) -> list[str]:
        return self._scheduler.active()

    async def start_monitoring(
        self, position_id: str, interval: float | None = None
    ) -> CollateralPosition:
        position = await self._store.get_position(position_id)
        loan = await self._store.get_loan(position.loan_id)
        if position.status is PositionStatus.LIQUIDATED or loan.is_terminal:
            raise PolicyViolation(f"Position {position_id} can no longer be monitored")
        interval = interval or position.monitoring.check_interval or self._cfg.check_interval_seconds
        if interval <= 0:
            raise ValidationError("Check interval must be positive")

        now = self._store.clock.now()
        position = await self._store.update_position(
            position_id,
            lambda p: replace(
                p,
                monitoring=replace(
                    p.monitoring,
                    enabled=True,
                    check_interval=interval,
                    next_check=now + timedelta(seconds=interval),
                ),
            ),
        )

        ticker = self._scheduler.get(position_id)
        if ticker is not None and ticker.running and ticker.interval != interval:
            await self._scheduler.cancel(position_id)
        self._scheduler.schedule(
            position_id,
            interval,
            lambda: self._tick(position_id),
            timeout=self._cfg.check_timeout_seconds,
        )
        logger.info("Monitoring position %s every %.0fs", position_id, interval)
        return position

    async def stop_monitoring(self, position_id: str) -> None:
        await self._scheduler.cancel(position_id)
        try:
            await self._store.update_position(
                position_id,
                lambda p: replace(
                    p, monitoring=replace(p.monitoring, enabled=False, next_check=None)
                ),
            )
        except NotFoundError:
            logger.warning("Stopped monitoring unknown position %s", position_id)
            return
        logger.info("Stopped monitoring position %s", position_id)

    def pause(self, position_id: str) -> bool:
        return self._scheduler.pause(position_id)

    def resume(self, position_id: str) -> bool:
        return self._scheduler.resume(position_id)

    async def shutdown(self) -> None:
        await self._scheduler.shutdown()

    async def _tick(self, position_id: str) -> None:
        try:
            await self.check_position(position_id)
        except CollaboratorError as e:
            logger.warning("Check of position %s skipped: %s", position_id, e)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_position(self, position_id: str) -> CollateralPosition:
        """Reprice a position, raise alerts, move the loan and run automation.

        Checks of one position never overlap, so a ticker and
        :meth:`run_all_checks` cannot both act on the same snapshot.
        """
        async with self._check_locks.setdefault(position_id, asyncio.Lock()):
            return await self._check(position_id)

    async def _check(self, position_id: str) -> CollateralPosition:
        position = await self._store.get_position(position_id)
        if position.status is PositionStatus.LIQUIDATED:
            return position

        symbols = sorted(set(position.symbols) | {position.debt_asset})
        prices = await call_collaborator(
            "price_oracle", lambda: self._oracle.get_prices(symbols), self._retry
        )
        if position.symbols and not any(s in prices for s in position.symbols):
            raise CollaboratorError(
                "price_oracle", f"no collateral prices for position {position_id}"
            )
        missing = [s for s in symbols if s not in prices]
        if missing:
            logger.warning(
                "No fresh price for %s on position %s; keeping last known",
                ", ".join(missing),
                position_id,
            )

        now = self._store.clock.now()
        raised: list[Alert] = []

        def _refresh(loan: Loan, pos: CollateralPosition | None):
            if pos is None or pos.id != position_id:
                raise NotFoundError("Position", position_id)
            debt_price = prices.get(pos.debt_asset) or pos.debt_price_usd
            updated = replace(
                pos, assets=risk.reprice(pos.assets, prices), debt_price_usd=debt_price
            )
            updated = refresh_position(replace(updated, debt_amount=loan.principal.remaining), now)
            alerts, monitoring = self._evaluate(pos, updated, now)
            raised.extend(alerts)
            history = updated.history
            if updated.status is not pos.status:
                history += (
                    history_entry(
                        "status_changed",
                        f"{pos.status.value} -> {updated.status.value}",
                        now,
                        {"ltv": updated.metrics.current_ltv},
                    ),
                )
            return loan, replace(updated, monitoring=monitoring, history=history)

        loan, refreshed = await self._store.update(position.loan_id, _refresh)
        position = attached_position(loan.id, refreshed)

        logger.info(
            "Position %s: value $%.2f  LTV %.2f%%  HF %.2f  status %s",
            position.id,
            position.total_value_usd,
            position.metrics.current_ltv * 100,
            position.metrics.health_factor,
            position.status.value,
        )
        for alert in raised:
            self._publish(
                EventType.ALERT_TRIGGERED,
                loan,
                alert_event_data(
                    alert, position.metrics.current_ltv, position.metrics.health_factor
                ),
            )

        await self._drive_loan(loan, position)
        return await self._automate(position_id)

    def _evaluate(
        self, before: CollateralPosition, after: CollateralPosition, now: datetime
    ) -> tuple[list[Alert], MonitoringState]:
        """Alerts for a refreshed position and the monitoring state to keep."""
        alerts: list[Alert] = []
        state = before.monitoring
        alerted = state.alerted_status
        status = after.status
        ltv = after.metrics.current_ltv

        if risk.status_severity(status) > risk.status_severity(alerted):
            if status in STATUS_ALERTS:
                type, severity, action = STATUS_ALERTS[status]
                alerts.append(
                    Alert(
                        id=new_id("alert"),
                        type=type,
                        severity=severity,
                        message=f"LTV {ltv:.2%} entered {status.value} "
                        f"(health factor {after.metrics.health_factor:.2f})",
                        created_at=now,
                        action_required=action,
                    )
                )
            alerted = status
        elif risk.status_severity(status) < risk.status_severity(alerted):
            alerted = status

        flags = set(state.active_flags)
        vol = after.metrics.volatility_index
        if vol >= self._cfg.alert_thresholds.volatility_spike:
            if FLAG_VOLATILITY not in flags:
                flags.add(FLAG_VOLATILITY)
                alerts.append(
                    Alert(
                        id=new_id("alert"),
                        type=AlertType.VOLATILITY_SPIKE,
                        severity=Severity.INFO,
                        message=f"High volatility detected: {vol:.1%} 24h",
                        created_at=now,
                    )
                )
        else:
            flags.discard(FLAG_VOLATILITY)

        top = max(after.assets, key=lambda a: a.weight, default=None)
        if top is not None and top.weight > self._cfg.concentration_limit:
            if FLAG_CONCENTRATION not in flags:
                flags.add(FLAG_CONCENTRATION)
                alerts.append(
                    Alert(
                        id=new_id("alert"),
                        type=AlertType.CONCENTRATION_RISK,
                        severity=Severity.INFO,
                        message=f"{top.symbol} is {top.weight:.0%} of collateral; consider diversifying",
                        created_at=now,
                    )
                )
        else:
            flags.discard(FLAG_CONCENTRATION)

        alerts.sort(key=lambda a: SEVERITY_RANK[a.severity], reverse=True)
        interval = state.check_interval or self._cfg.check_interval_seconds
        return alerts, replace(
            state,
            last_check=now,
            next_check=now + timedelta(seconds=interval),
            alerted_status=alerted,
            active_flags=frozenset(flags),
            alerts=state.alerts + tuple(alerts),
        )

    async def _drive_loan(self, loan: Loan, position: CollateralPosition) -> None:
        """Move the loan between active, margin call and liquidation pending."""
        verdict = assess(loan, self._store.clock.now(), self._config.lending.payment_due_days).health
        data = {"position_id": position.id, "ltv": loan.ltv.current}

        if verdict is HealthVerdict.LIQUIDATION_RISK and loan.status in (
            LoanStatus.ACTIVE,
            LoanStatus.MARGIN_CALL,
        ):
            moved = await self._store.transition_loan(
                loan.id, loan.status, LoanStatus.LIQUIDATION_PENDING,
                "LTV reached the liquidation threshold", data,
            )
            if moved is not None:
                logger.warning("Loan %s pending liquidation at LTV %.2f%%", loan.id, loan.ltv.current * 100)
                self._publish(EventType.LIQUIDATION_TRIGGERED, moved, data)
        elif verdict is HealthVerdict.CRITICAL and loan.status is LoanStatus.ACTIVE:
            moved = await self._store.transition_loan(
                loan.id, LoanStatus.ACTIVE, LoanStatus.MARGIN_CALL,
                "LTV crossed the margin call threshold", data,
            )
            if moved is not None:
                logger.warning("Margin call on loan %s at LTV %.2f%%", loan.id, loan.ltv.current * 100)
                self._publish(EventType.MARGIN_CALL_TRIGGERED, moved, data)
        elif (
            verdict in (HealthVerdict.HEALTHY, HealthVerdict.WARNING)
            and loan.status is LoanStatus.MARGIN_CALL
        ):
            moved = await self._store.transition_loan(
                loan.id, LoanStatus.MARGIN_CALL, LoanStatus.ACTIVE,
                "LTV recovered below the margin call threshold", data,
            )
            if moved is not None:
                logger.info("Margin call on loan %s resolved", loan.id)
                self._publish(EventType.MARGIN_CALL_RESOLVED, moved, data)

    async def run_all_checks(self) -> list[CollateralPosition]:
        """Check every enabled position concurrently; failures are logged."""
        targets = [
            p
            for p in await self._store.list_positions()
            if p.monitoring.enabled and p.status is not PositionStatus.LIQUIDATED
        ]
        results = await asyncio.gather(
            *(self.check_position(p.id) for p in targets), return_exceptions=True
        )
        checked: list[CollateralPosition] = []
        for position, result in zip(targets, results):
            if isinstance(result, CollateralPosition):
                checked.append(result)
            elif isinstance(result, Exception):
                logger.error("Check of position %s failed: %s", position.id, result)
            else:
                raise result
        return checked

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    async def _automate(self, position_id: str) -> CollateralPosition:
        position = await self._store.get_position(position_id)
        loan = await self._store.get_loan(position.loan_id)
        if loan.is_terminal or loan.status is LoanStatus.LIQUIDATION_PENDING:
            return position

        steps = (
            ("top-up", self._maybe_top_up),
            ("rebalance", self._maybe_rebalance),
            ("withdraw", self._maybe_withdraw),
        )
        for name, step in steps:
            try:
                position = await step(position)
            except (CollaboratorError, PolicyViolation, ValidationError) as e:
                logger.warning("Auto %s on position %s failed: %s", name, position_id, e)
        return position

    async def _maybe_top_up(self, position: CollateralPosition) -> CollateralPosition:
        cfg = position.automation.auto_top_up
        ltv = position.metrics.current_ltv
        if not cfg.enabled or ltv < cfg.trigger_threshold:
            return position

        needed_usd = risk.collateral_needed(
            position.debt_value_usd, position.total_value_usd, cfg.target_ltv
        )
        price = await self._asset_price(cfg.top_up_asset, position)
        amount = min(max(needed_usd / price, cfg.min_top_up_amount), cfg.max_top_up_amount)
        logger.info(
            "Auto top-up of %g %s on position %s (LTV %.2f%% -> target %.2f%%)",
            amount,
            cfg.top_up_asset,
            position.id,
            ltv * 100,
            cfg.target_ltv * 100,
        )
        return await self._lending.add_collateral(
            position.loan_id,
            cfg.top_up_asset,
            amount,
            reason="topped_up",
            event=EventType.COLLATERAL_TOPPED_UP,
        )

    async def _maybe_rebalance(self, position: CollateralPosition) -> CollateralPosition:
        cfg = position.automation.auto_rebalance
        if not cfg.enabled or not cfg.targets:
            return position
        drift = max(
            abs((position.asset(t.asset).weight if position.asset(t.asset) else 0.0) - t.target_weight)
            for t in cfg.targets
        )
        if drift <= cfg.rebalance_threshold:
            return position
        return await self.rebalance_assets(position.id)

    async def _maybe_withdraw(self, position: CollateralPosition) -> CollateralPosition:
        cfg = position.automation.auto_withdraw
        hf = position.metrics.health_factor
        if not cfg.enabled or math.isinf(hf) or hf < cfg.withdraw_threshold:
            return position
        held = position.asset(cfg.withdraw_asset)
        if held is None or held.price_usd <= 0:
            logger.debug("Position %s holds no %s to withdraw", position.id, cfg.withdraw_asset)
            return position
        excess_usd = risk.excess_collateral(
            position.debt_value_usd,
            position.total_value_usd,
            cfg.withdraw_threshold,
            position.thresholds.liquidation,
        )
        amount = min(excess_usd / held.price_usd, held.amount)
        if amount <= 0:
            return position
        logger.info("Auto withdraw of %g %s from position %s", amount, held.symbol, position.id)
        return await self._lending.withdraw_collateral(
            position.loan_id, held.symbol, amount, reason="auto_withdrawn"
        )

    async def _asset_price(self, symbol: str, position: CollateralPosition) -> float:
        held = position.asset(symbol)
        if held is not None and held.price_usd > 0:
            return held.price_usd
        prices = await fetch_prices([symbol], self._oracle, self._config, self._retry)
        if symbol not in prices:
            raise ValidationError(f"No price available for {symbol}")
        return prices[symbol]

    async def rebalance_assets(self, position_id: str) -> CollateralPosition:
        """Reallocate collateral value to the configured target weights.

        Total collateral value is preserved; assets without a target are
        sold down to zero.
        """
        position = await self._store.get_position(position_id)
        cfg = position.automation.auto_rebalance
        if not cfg.targets:
            raise ValidationError(f"Position {position_id} has no allocation targets")
        prices = {t.asset: await self._asset_price(t.asset, position) for t in cfg.targets}
        now = self._store.clock.now()

        def _rebalance(loan: Loan, pos: CollateralPosition | None):
            if pos is None or pos.id != position_id:
                raise NotFoundError("Position", position_id)
            total = pos.total_value_usd
            before = {a.symbol: a.weight for a in pos.assets}
            assets = []
            for t in cfg.targets:
                if t.target_weight <= 0:
                    continue
                value = total * t.target_weight
                held = pos.asset(t.asset)
                volatility = held.volatility if held else self._config.asset_profile(t.asset).volatility
                assets.append(
                    CollateralAsset(
                        symbol=t.asset,
                        amount=value / prices[t.asset],
                        price_usd=prices[t.asset],
                        value_usd=value,
                        volatility=volatility,
                    )
                )
            entry = history_entry(
                "rebalanced",
                "Collateral rebalanced to target allocation",
                now,
                {"before": before, "after": {t.asset: t.target_weight for t in cfg.targets}},
            )
            return loan, replace(pos, assets=tuple(assets), history=pos.history + (entry,))

        loan, rebalanced = await self._store.update(position.loan_id, _rebalance)
        position = attached_position(loan.id, rebalanced)
        self._publish(
            EventType.COLLATERAL_REBALANCED,
            loan,
            {"position_id": position.id, "weights": {a.symbol: a.weight for a in position.assets}},
        )
        return position

    # ------------------------------------------------------------------
    # Automation settings
    # ------------------------------------------------------------------

    async def configure_auto_top_up(
        self, position_id: str, cfg: AutoTopUpConfig
    ) -> CollateralPosition:
        if cfg.min_top_up_amount <= 0 or cfg.min_top_up_amount > cfg.max_top_up_amount:
            raise ValidationError("Top-up bounds must satisfy 0 < min <= max")
        if not 0 < cfg.target_ltv < cfg.trigger_threshold:
            raise ValidationError("Top-up target LTV must be below the trigger threshold")
        return await self._store.update_position(
            position_id,
            lambda p: replace(p, automation=replace(p.automation, auto_top_up=cfg)),
        )

    async def configure_auto_rebalance(
        self, position_id: str, cfg: AutoRebalanceConfig
    ) -> CollateralPosition:
        if cfg.rebalance_threshold <= 0:
            raise ValidationError("Rebalance threshold must be positive")
        if cfg.targets:
            if any(not 0 <= t.target_weight <= 1 for t in cfg.targets):
                raise ValidationError("Target weights must be within [0, 1]")
            if abs(sum(t.target_weight for t in cfg.targets) - 1.0) > WEIGHT_TOLERANCE:
                raise ValidationError("Target weights must sum to 1")
        elif cfg.enabled:
            raise ValidationError("Auto rebalance needs at least one target")
        return await self._store.update_position(
            position_id,
            lambda p: replace(p, automation=replace(p.automation, auto_rebalance=cfg)),
        )

    async def configure_auto_withdraw(
        self, position_id: str, cfg: AutoWithdrawConfig
    ) -> CollateralPosition:
        if cfg.withdraw_threshold <= 1:
            raise ValidationError("Withdraw threshold is a health factor and must exceed 1")
        return await self._store.update_position(
            position_id,
            lambda p: replace(p, automation=replace(p.automation, auto_withdraw=cfg)),
        )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> CollateralStats:
        positions = await self._store.list_positions()
        finite = [
            p.metrics.health_factor
            for p in positions
            if not math.isinf(p.metrics.health_factor)
        ]
        return CollateralStats(
            total_positions=len(positions),
            total_value_usd=sum(p.total_value_usd for p in positions),
            positions_at_risk=sum(
                1
                for p in positions
                if p.status in (PositionStatus.CRITICAL, PositionStatus.LIQUIDATING)
            ),
            average_health_factor=sum(finite) / len(finite) if finite else 0.0,
            alerts_active=sum(
                1 for p in positions for a in p.monitoring.alerts if not a.acknowledged
            ),
        )

    def _publish(self, type: EventType, loan: Loan, data: dict) -> None:
        self._bus.publish(
            make_event(
                type,
                self._store.clock.now(),
                loan_id=loan.id,
                user_id=loan.user_id,
                data=data,
            )
        )
