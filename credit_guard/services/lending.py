"""Lending service: provider registry, quotes and user-facing loan operations."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import replace
from typing import Awaitable, Callable, TypeVar

from .. import risk
from ..config import AppConfig
from ..errors import CollaboratorError, NotFoundError, PolicyViolation, ValidationError
from ..events import EventBus, make_event
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.provider import ProviderAdapter
from ..models import (
    TERMINAL_LOAN_STATUSES,
    Automation,
    CollateralAsset,
    CollateralOffer,
    CollateralPosition,
    CreateLoanRequest,
    EventType,
    InterestInfo,
    LendingStats,
    Loan,
    LoanStatus,
    LTVInfo,
    MonitoringState,
    PositionMetrics,
    PositionStatus,
    Principal,
    Quote,
)
from ..resilience import RetryPolicy, call_collaborator
from ..store import LoanStore, attached_position, history_entry, new_id
from .pricing import build_assets, fetch_prices, validate_offers

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPEN_LOAN_STATUSES = frozenset(LoanStatus) - TERMINAL_LOAN_STATUSES
REPAYABLE_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.MARGIN_CALL})
AT_RISK_STATUSES = frozenset({LoanStatus.MARGIN_CALL, LoanStatus.LIQUIDATION_PENDING})

# Remaining balances below this are treated as fully repaid.
DUST = 1e-9


class LendingService:
    def __init__(
        self,
        store: LoanStore,
        bus: EventBus,
        config: AppConfig,
        oracle: PriceOracle | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config
        self._lending = config.lending
        self._oracle = oracle
        self._retry = retry or RetryPolicy.from_config(config.collaborators)
        self._providers: dict[str, ProviderAdapter] = {}

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def register_provider(self, adapter: ProviderAdapter) -> None:
        self._providers[adapter.name] = adapter
        logger.info("Registered lending provider %s", adapter.name)

    @property
    def providers(self) -> list[str]:
        return sorted(self._providers)

    def provider(self, name: str) -> ProviderAdapter:
        adapter = self._providers.get(name)
        if adapter is None:
            raise NotFoundError("Provider", name)
        return adapter

    async def _call(
        self, adapter: ProviderAdapter, op: str, fn: Callable[[], Awaitable[T]]
    ) -> T:
        return await call_collaborator(f"{adapter.name}.{op}", fn, self._retry)

    async def _ensure_connected(self, adapter: ProviderAdapter) -> None:
        if adapter.connected:
            return
        await self._call(adapter, "connect", adapter.connect)
        self._publish(EventType.PROVIDER_CONNECTED, data={"provider": adapter.name})

    async def health_check(self) -> dict[str, bool]:
        """Best-effort health of every provider; failures count as unhealthy."""

        async def _one(adapter: ProviderAdapter) -> bool:
            try:
                return bool(await self._call(adapter, "health_check", adapter.health_check))
            except CollaboratorError as e:
                logger.warning("Provider %s health check failed: %s", adapter.name, e)
                return False

        names = self.providers
        results = await asyncio.gather(*(_one(self._providers[n]) for n in names))
        return dict(zip(names, results))

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_quote(
        self,
        collateral_asset: str,
        collateral_amount: float,
        borrow_asset: str,
        ltv: float | None = None,
        provider: str | None = None,
    ) -> Quote:
        if collateral_amount <= 0:
            raise ValidationError("Collateral amount must be positive")
        if ltv is not None and not 0 < ltv <= self._lending.max_ltv:
            raise ValidationError(f"LTV must be in (0, {self._lending.max_ltv}]")
        adapter = self.provider(provider or self._lending.default_provider)
        await self._ensure_connected(adapter)
        quote = await self._call(
            adapter,
            "get_quote",
            lambda: adapter.get_quote(collateral_asset, collateral_amount, borrow_asset, ltv),
        )
        return replace(quote, provider=adapter.name)

    async def get_all_quotes(
        self,
        collateral_asset: str,
        collateral_amount: float,
        borrow_asset: str,
        ltv: float | None = None,
    ) -> list[Quote]:
        """Quotes from every provider; a failing provider is skipped."""
        names = self.providers
        results = await asyncio.gather(
            *(
                self.get_quote(collateral_asset, collateral_amount, borrow_asset, ltv, n)
                for n in names
            ),
            return_exceptions=True,
        )
        quotes: list[Quote] = []
        for name, result in zip(names, results):
            if isinstance(result, Quote):
                quotes.append(result)
            elif isinstance(result, Exception):
                logger.warning("Quote from %s failed: %s", name, result)
            else:
                raise result
        return quotes

    async def get_best_quote(
        self,
        collateral_asset: str,
        collateral_amount: float,
        borrow_asset: str,
        ltv: float | None = None,
    ) -> Quote | None:
        quotes = await self.get_all_quotes(collateral_asset, collateral_amount, borrow_asset, ltv)
        return min(quotes, key=lambda q: q.interest_rate, default=None)

    # ------------------------------------------------------------------
    # Origination
    # ------------------------------------------------------------------

    async def originate(self, assessment_id: str, provider: str | None = None) -> Loan:
        """Open a loan from an approved, unexpired underwriting assessment."""
        assessment = await self._store.get_assessment(assessment_id)
        decision = assessment.decision
        if not decision.approved:
            raise PolicyViolation(f"Assessment {assessment_id} was declined")
        if self._store.clock.now() > decision.valid_until:
            raise PolicyViolation(
                f"Assessment {assessment_id} expired at {decision.valid_until.isoformat()}"
            )
        for loan in await self._store.list_loans(user_id=assessment.user_id):
            if loan.assessment_id == assessment_id:
                raise PolicyViolation(
                    f"Assessment {assessment_id} already originated loan {loan.id}"
                )

        request = CreateLoanRequest(
            user_id=assessment.user_id,
            collateral=assessment.request.collateral,
            borrow_asset=assessment.request.requested_asset,
            borrow_amount=decision.approved_amount,
            provider=provider,
        )
        max_ltv = decision.terms.max_ltv if decision.terms else self._lending.max_ltv
        return await self._open(request, assessment_id=assessment_id, max_ltv=max_ltv)

    async def create_loan(self, request: CreateLoanRequest) -> Loan:
        return await self._open(request)

    def _validate_request(self, request: CreateLoanRequest) -> None:
        lending = self._lending
        if not request.user_id:
            raise ValidationError("User id is required")
        if not request.borrow_asset:
            raise ValidationError("Borrow asset is required")
        if request.borrow_amount <= 0 or math.isnan(request.borrow_amount):
            raise ValidationError("Borrow amount must be positive")
        if request.borrow_amount < lending.min_loan_amount:
            raise ValidationError(f"Amount below minimum: {lending.min_loan_amount:g}")
        if request.borrow_amount > lending.max_loan_amount:
            raise ValidationError(f"Amount above maximum: {lending.max_loan_amount:g}")
        validate_offers(request.collateral)
        unsupported = sorted(
            {o.asset for o in request.collateral} - set(lending.supported_assets)
        )
        if unsupported:
            raise ValidationError(f"Unsupported collateral: {', '.join(unsupported)}")
        if request.ltv is not None and request.ltv > lending.max_ltv:
            raise ValidationError(f"LTV {request.ltv} exceeds maximum {lending.max_ltv}")

    async def _open(
        self,
        request: CreateLoanRequest,
        assessment_id: str | None = None,
        max_ltv: float | None = None,
        replacing: str | None = None,
    ) -> Loan:
        self._validate_request(request)
        lending = self._lending
        max_ltv = min(max_ltv or lending.max_ltv, lending.max_ltv)

        if lending.require_human_approval and request.borrow_amount > lending.approval_threshold:
            raise PolicyViolation(
                f"Amount {request.borrow_amount:g} requires human approval "
                f"(threshold: {lending.approval_threshold:g})"
            )
        open_loans = [
            l
            for l in await self._store.list_loans(request.user_id, OPEN_LOAN_STATUSES)
            if l.id != replacing
        ]
        if len(open_loans) >= lending.max_open_loans:
            raise PolicyViolation(
                f"User {request.user_id} already has {len(open_loans)} open loans"
            )

        adapter = self.provider(request.provider or lending.default_provider)

        symbols = [o.asset for o in request.collateral] + [request.borrow_asset]
        prices = await fetch_prices(symbols, self._oracle, self._config, self._retry)
        debt_price = prices.get(request.borrow_asset)
        if debt_price is None:
            raise ValidationError(f"No price available for {request.borrow_asset}")
        assets = build_assets(request.collateral, prices, self._config)
        collateral_value = sum(a.value_usd for a in assets)
        ltv = risk.loan_to_value(request.borrow_amount * debt_price, collateral_value)
        if ltv > max_ltv:
            raise PolicyViolation(f"LTV {ltv:.2%} exceeds maximum {max_ltv:.2%}")

        await self._ensure_connected(adapter)
        receipt = await self._call(adapter, "create_loan", lambda: adapter.create_loan(request))
        if receipt.status not in (LoanStatus.PENDING, LoanStatus.ACTIVE):
            raise CollaboratorError(
                adapter.name,
                f"opened loan in unexpected status {receipt.status.value}",
                retryable=False,
            )

        now = self._store.clock.now()
        loan_id = new_id("loan")
        loan = Loan(
            id=loan_id,
            user_id=request.user_id,
            provider=adapter.name,
            status=receipt.status,
            principal=Principal(
                asset=request.borrow_asset,
                amount=request.borrow_amount,
                remaining=request.borrow_amount,
                value_usd=request.borrow_amount * debt_price,
            ),
            interest=InterestInfo(rate=receipt.interest_rate),
            ltv=LTVInfo(
                current=ltv,
                initial=ltv,
                max=max_ltv,
                liquidation=lending.liquidation_threshold,
                margin_call=lending.margin_call_threshold,
                safe_zone=lending.safe_zone,
            ),
            created_at=now,
            updated_at=now,
            external_id=receipt.external_id,
            assessment_id=assessment_id,
            history=(
                history_entry(
                    "created",
                    f"Borrowed {request.borrow_amount:g} {request.borrow_asset} from {adapter.name}",
                    now,
                    {"external_id": receipt.external_id, "ltv": ltv},
                ),
            ),
        )
        monitor_cfg = self._config.monitor
        position = CollateralPosition(
            id=new_id("pos"),
            loan_id=loan_id,
            user_id=request.user_id,
            status=PositionStatus.HEALTHY,
            assets=assets,
            total_value_usd=collateral_value,
            debt_asset=request.borrow_asset,
            debt_amount=request.borrow_amount,
            thresholds=monitor_cfg.thresholds,
            metrics=PositionMetrics(),
            created_at=now,
            updated_at=now,
            debt_price_usd=debt_price,
            monitoring=MonitoringState(
                enabled=monitor_cfg.auto_start,
                check_interval=monitor_cfg.check_interval_seconds,
            ),
            automation=Automation(auto_top_up=monitor_cfg.auto_top_up),
            history=(
                history_entry(
                    "deposited",
                    "Initial collateral deposit",
                    now,
                    {"assets": {a.symbol: a.amount for a in assets}},
                ),
            ),
        )
        loan, stored = await self._store.add_loan(loan, position)
        position = attached_position(loan.id, stored)

        self._publish(
            EventType.LOAN_DISBURSED,
            loan,
            {
                "provider": adapter.name,
                "amount": request.borrow_amount,
                "asset": request.borrow_asset,
                "ltv": loan.ltv.current,
            },
        )
        self._publish(
            EventType.COLLATERAL_DEPOSITED,
            loan,
            {"position_id": position.id, "total_value_usd": position.total_value_usd},
        )
        logger.info(
            "Opened loan %s: %g %s via %s at LTV %.2f%%",
            loan.id,
            request.borrow_amount,
            request.borrow_asset,
            adapter.name,
            loan.ltv.current * 100,
        )
        return loan

    async def activate(self, loan_id: str) -> Loan:
        """Move a loan the provider opened as pending to active."""
        loan = await self._store.transition_loan(
            loan_id, LoanStatus.PENDING, LoanStatus.ACTIVE, "Provider confirmed disbursement"
        )
        if loan is None:
            raise PolicyViolation(f"Loan {loan_id} is not pending")
        return loan

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_loan(self, loan_id: str) -> Loan:
        return await self._store.get_loan(loan_id)

    async def get_user_loans(self, user_id: str) -> list[Loan]:
        return await self._store.list_loans(user_id=user_id)

    async def get_active_loans(self, user_id: str | None = None) -> list[Loan]:
        return await self._store.list_loans(user_id, [LoanStatus.ACTIVE])

    # ------------------------------------------------------------------
    # Repayment and interest
    # ------------------------------------------------------------------

    async def accrue_interest(self, loan_id: str, days: float) -> Loan:
        """Accrue simple interest on the remaining principal."""
        if days < 0:
            raise ValidationError("Days must not be negative")

        def _accrue(loan: Loan) -> Loan:
            if loan.is_terminal:
                return loan
            accrued = loan.principal.remaining * loan.interest.rate * days / 365
            return replace(
                loan, interest=replace(loan.interest, accrued=loan.interest.accrued + accrued)
            )

        return await self._store.update_loan(loan_id, _accrue)

    async def repay(self, loan_id: str, amount: float) -> Loan:
        """Repay interest first, then principal; a full repayment closes the loan."""
        if amount <= 0:
            raise ValidationError("Repayment amount must be positive")

        async def _repay(current: Loan, position: CollateralPosition | None):
            if current.status not in REPAYABLE_STATUSES:
                raise PolicyViolation(
                    f"Loan {loan_id} cannot be repaid while {current.status.value}"
                )
            due = max(0.0, current.interest.accrued - current.interest.paid)
            outstanding = current.principal.remaining + due
            if amount > outstanding + DUST:
                raise ValidationError(
                    f"Repayment {amount:g} exceeds outstanding balance {outstanding:g}"
                )
            adapter = self.provider(current.provider)
            await self._call(
                adapter, "repay", lambda: adapter.repay(current.external_id, amount)
            )

            to_interest = min(amount, due)
            to_principal = amount - to_interest
            remaining = max(0.0, current.principal.remaining - to_principal)
            now = self._store.clock.now()
            entries = [
                history_entry(
                    "payment_made",
                    f"Repayment of {amount:g} {current.principal.asset}",
                    now,
                    {"amount": amount, "interest": to_interest, "principal": to_principal},
                )
            ]
            status = current.status
            if remaining <= DUST and due - to_interest <= DUST:
                remaining = 0.0
                status = LoanStatus.CLOSED
                entries.append(history_entry("status_changed", "Repaid in full", now,
                                             {"from": current.status.value, "to": "closed"}))
            updated = replace(
                current,
                status=status,
                principal=replace(current.principal, remaining=remaining),
                interest=replace(current.interest, paid=current.interest.paid + to_interest),
                history=current.history + tuple(entries),
            )
            return updated, position

        loan, _ = await self._store.update_async(loan_id, _repay)
        self._publish(
            EventType.LOAN_REPAYMENT, loan, {"amount": amount, "remaining": loan.principal.remaining}
        )
        if loan.status is LoanStatus.CLOSED:
            self._publish(EventType.LOAN_CLOSED, loan, {"reason": "repaid"})
            logger.info("Loan %s repaid in full", loan_id)
        return loan

    # ------------------------------------------------------------------
    # Collateral
    # ------------------------------------------------------------------

    async def add_collateral(
        self,
        loan_id: str,
        asset: str,
        amount: float,
        reason: str = "collateral_added",
        event: EventType = EventType.COLLATERAL_DEPOSITED,
    ) -> CollateralPosition:
        if amount <= 0:
            raise ValidationError("Collateral amount must be positive")

        async def _add(current: Loan, pos: CollateralPosition | None):
            if current.is_terminal:
                raise PolicyViolation(f"Loan {loan_id} is {current.status.value}")
            if pos is None:
                raise NotFoundError("Position for loan", loan_id)
            price = await self._price_for(asset, pos)
            adapter = self.provider(current.provider)
            await self._call(
                adapter,
                "add_collateral",
                lambda: adapter.add_collateral(current.external_id, asset, amount),
            )

            held = pos.asset(asset)
            if held is None:
                assets = pos.assets + (
                    CollateralAsset(
                        symbol=asset,
                        amount=amount,
                        price_usd=price,
                        value_usd=amount * price,
                        volatility=self._config.asset_profile(asset).volatility,
                    ),
                )
            else:
                assets = tuple(
                    replace(a, amount=a.amount + amount, value_usd=(a.amount + amount) * a.price_usd)
                    if a.symbol == asset
                    else a
                    for a in pos.assets
                )
            entry = history_entry(
                reason,
                f"Added {amount:g} {asset}",
                self._store.clock.now(),
                {"asset": asset, "amount": amount, "ltv_before": pos.metrics.current_ltv},
            )
            return current, replace(pos, assets=assets, history=pos.history + (entry,))

        loan, stored = await self._store.update_async(loan_id, _add)
        position = attached_position(loan_id, stored)
        self._publish(
            event,
            loan,
            {
                "position_id": position.id,
                "asset": asset,
                "amount": amount,
                "ltv": position.metrics.current_ltv,
            },
        )
        return position

    async def withdraw_collateral(
        self,
        loan_id: str,
        asset: str,
        amount: float,
        reason: str = "withdrawn",
    ) -> CollateralPosition:
        """Withdraw collateral unless the resulting LTV would exceed the safe zone."""
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")

        async def _withdraw(current: Loan, pos: CollateralPosition | None):
            if current.is_terminal and current.status is not LoanStatus.CLOSED:
                raise PolicyViolation(f"Loan {loan_id} is {current.status.value}")
            if pos is None:
                raise NotFoundError("Position for loan", loan_id)
            self._check_withdrawal(current, pos, asset, amount)
            adapter = self.provider(current.provider)
            await self._call(
                adapter,
                "withdraw_collateral",
                lambda: adapter.withdraw_collateral(current.external_id, asset, amount),
            )

            assets = tuple(
                a
                if a.symbol != asset
                else replace(a, amount=a.amount - amount, value_usd=(a.amount - amount) * a.price_usd)
                for a in pos.assets
            )
            assets = tuple(a for a in assets if a.amount > DUST)
            entry = history_entry(
                reason, f"Withdrew {amount:g} {asset}", self._store.clock.now(),
                {"asset": asset, "amount": amount},
            )
            return current, replace(pos, assets=assets, history=pos.history + (entry,))

        loan, stored = await self._store.update_async(loan_id, _withdraw)
        position = attached_position(loan_id, stored)
        self._publish(
            EventType.COLLATERAL_WITHDRAWN,
            loan,
            {
                "position_id": position.id,
                "asset": asset,
                "amount": amount,
                "ltv": position.metrics.current_ltv,
            },
        )
        return position

    def _check_withdrawal(
        self, loan: Loan, position: CollateralPosition, asset: str, amount: float
    ) -> None:
        held = position.asset(asset)
        if held is None:
            raise ValidationError(f"Asset not found in position: {asset}")
        if amount > held.amount + DUST:
            raise ValidationError(f"Insufficient {asset} balance: {held.amount:g} < {amount:g}")
        remaining_value = position.total_value_usd - amount * held.price_usd
        resulting = risk.loan_to_value(position.debt_value_usd, remaining_value)
        if resulting > loan.ltv.safe_zone:
            raise PolicyViolation(
                f"Withdrawal would raise LTV to {resulting:.2%}, above safe zone "
                f"{loan.ltv.safe_zone:.2%}"
            )

    async def _require_position(self, loan_id: str) -> CollateralPosition:
        position = await self._store.get_position_by_loan(loan_id)
        if position is None:
            raise NotFoundError("Position for loan", loan_id)
        return position

    async def _price_for(self, asset: str, position: CollateralPosition) -> float:
        held = position.asset(asset)
        if held is not None and held.price_usd > 0:
            return held.price_usd
        prices = await fetch_prices([asset], self._oracle, self._config, self._retry)
        if asset not in prices:
            raise ValidationError(f"No price available for {asset}")
        return prices[asset]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel(self, loan_id: str, reason: str = "") -> Loan:
        return await self._terminate(loan_id, LoanStatus.CANCELLED, EventType.LOAN_CANCELLED, reason)

    async def mark_defaulted(self, loan_id: str, reason: str = "") -> Loan:
        return await self._terminate(loan_id, LoanStatus.DEFAULTED, EventType.LOAN_DEFAULTED, reason)

    async def _terminate(
        self, loan_id: str, target: LoanStatus, event: EventType, reason: str
    ) -> Loan:
        def _end(current: Loan, position: CollateralPosition | None):
            if current.is_terminal:
                raise PolicyViolation(f"Loan {loan_id} is already {current.status.value}")
            entry = history_entry(
                "status_changed",
                reason or f"{current.status.value} -> {target.value}",
                self._store.clock.now(),
                {"from": current.status.value, "to": target.value},
            )
            return replace(current, status=target, history=current.history + (entry,)), position

        loan, _ = await self._store.update(loan_id, _end)
        self._publish(event, loan, {"reason": reason})
        logger.info("Loan %s %s", loan_id, target.value)
        return loan

    async def record_liquidation(self, loan_id: str, fully: bool) -> Loan:
        """Record the provider's liquidation outcome for a pending liquidation."""
        target = LoanStatus.FULLY_LIQUIDATED if fully else LoanStatus.PARTIALLY_LIQUIDATED
        loan = await self._store.transition_loan(
            loan_id,
            LoanStatus.LIQUIDATION_PENDING,
            target,
            "Provider reported liquidation",
        )
        if loan is None:
            current = await self._store.get_loan(loan_id)
            raise PolicyViolation(
                f"Loan {loan_id} is {current.status.value}, not pending liquidation"
            )
        if fully:
            position = await self._store.mark_liquidated(loan_id)
            self._publish(
                EventType.COLLATERAL_LIQUIDATED, loan, {"position_id": position.id}
            )
        return loan

    async def close_liquidated(self, loan_id: str) -> Loan:
        loan = await self._store.get_loan(loan_id)
        if loan.status not in (LoanStatus.PARTIALLY_LIQUIDATED, LoanStatus.FULLY_LIQUIDATED):
            raise PolicyViolation(f"Loan {loan_id} is {loan.status.value}, not liquidated")
        closed = await self._store.transition_loan(
            loan_id, loan.status, LoanStatus.CLOSED, "Closed after liquidation"
        )
        if closed is None:
            raise PolicyViolation(f"Loan {loan_id} changed status concurrently")
        self._publish(EventType.LOAN_CLOSED, closed, {"reason": "liquidated"})
        return closed

    # ------------------------------------------------------------------
    # Refinancing
    # ------------------------------------------------------------------

    async def refinance_options(self, loan_id: str) -> list[Quote]:
        loan = await self._store.get_loan(loan_id)
        position = await self._require_position(loan_id)
        if not position.assets:
            return []
        main = max(position.assets, key=lambda a: a.value_usd)
        return await self.get_all_quotes(main.symbol, main.amount, loan.principal.asset)

    async def refinance(self, loan_id: str, provider: str) -> Loan:
        """Move the outstanding principal to ``provider`` and close the old loan."""
        opened: list[Loan] = []

        async def _refinance(current: Loan, pos: CollateralPosition | None):
            if current.status not in REPAYABLE_STATUSES:
                raise PolicyViolation(
                    f"Loan {loan_id} cannot be refinanced while {current.status.value}"
                )
            if pos is None:
                raise NotFoundError("Position for loan", loan_id)
            request = CreateLoanRequest(
                user_id=current.user_id,
                collateral=tuple(CollateralOffer(a.symbol, a.amount) for a in pos.assets),
                borrow_asset=current.principal.asset,
                borrow_amount=current.principal.remaining,
                provider=provider,
            )
            new_loan = await self._open(request, replacing=loan_id)
            opened.append(new_loan)
            entry = history_entry(
                "refinanced",
                f"Refinanced to loan {new_loan.id}",
                self._store.clock.now(),
                {"new_loan_id": new_loan.id, "new_provider": provider},
            )
            return (
                replace(
                    current,
                    status=LoanStatus.CLOSED,
                    principal=replace(current.principal, remaining=0.0),
                    history=current.history + (entry,),
                ),
                pos,
            )

        old, _ = await self._store.update_async(loan_id, _refinance)
        new_loan = opened[0]
        self._publish(EventType.LOAN_CLOSED, old, {"reason": "refinanced", "new_loan_id": new_loan.id})
        return new_loan

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> LendingStats:
        loans = await self._store.list_loans()
        active = [l for l in loans if l.status is LoanStatus.ACTIVE]
        total_collateral = 0.0
        for loan in loans:
            position = await self._store.get_position_by_loan(loan.id)
            if position is not None:
                total_collateral += position.total_value_usd
        return LendingStats(
            total_loans=len(loans),
            active_loans=len(active),
            total_borrowed_usd=sum(l.principal.value_usd for l in loans),
            total_collateral_usd=total_collateral,
            average_ltv=sum(l.ltv.current for l in active) / len(active) if active else 0.0,
            average_interest_rate=(
                sum(l.interest.rate for l in active) / len(active) if active else 0.0
            ),
            loans_at_risk=sum(1 for l in loans if l.status in AT_RISK_STATUSES),
            default_rate=(
                sum(1 for l in loans if l.status is LoanStatus.DEFAULTED) / len(loans)
                if loans
                else 0.0
            ),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _publish(
        self, type: EventType, loan: Loan | None = None, data: dict | None = None
    ) -> None:
        self._bus.publish(
            make_event(
                type,
                self._store.clock.now(),
                loan_id=loan.id if loan else None,
                user_id=loan.user_id if loan else None,
                data=data,
            )
        )
