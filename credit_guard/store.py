"""Loan and collateral store.

The store is the only owner of loan, position and assessment state. A loan
and its collateral position form one aggregate: writers take the loan's
lock, build new snapshots and swap them in with version-checked writes, so
readers only ever see whole snapshots.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Iterable, Mapping, Optional, TypeVar

from . import risk
from .errors import InvariantViolation, NotFoundError
from .interfaces.repository import Repository, Versioned
from .models import (
    Alert,
    CollateralPosition,
    HistoryEntry,
    Loan,
    LoanStatus,
    PositionStatus,
    UnderwritingAssessment,
    can_transition,
)
from .scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

AggregateFn = Callable[
    [Loan, Optional[CollateralPosition]], "tuple[Loan, Optional[CollateralPosition]]"
]
AsyncAggregateFn = Callable[
    [Loan, Optional[CollateralPosition]],
    "Awaitable[tuple[Loan, Optional[CollateralPosition]]]",
]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def history_entry(
    type: str, description: str, timestamp: datetime, data: Mapping[str, Any] | None = None
) -> HistoryEntry:
    return HistoryEntry(
        id=new_id("hist"),
        timestamp=timestamp,
        type=type,
        description=description,
        data=dict(data or {}),
    )


def attached_position(
    loan_id: str, position: CollateralPosition | None
) -> CollateralPosition:
    """The loan's position after a write that must have kept one."""
    if position is None:
        logger.error("Loan %s lost its collateral position", loan_id)
        raise InvariantViolation(f"Loan {loan_id} has no collateral position")
    return position


def refresh_position(position: CollateralPosition, now: datetime) -> CollateralPosition:
    """Recompute weights, totals, metrics and status from assets and debt.

    Status is a projection of LTV except once a position is liquidated.
    """
    assets = risk.reweight(position.assets)
    metrics = risk.compute_metrics(assets, position.debt_value_usd, position.thresholds)
    status = position.status
    if status is not PositionStatus.LIQUIDATED:
        status = risk.position_status(metrics.current_ltv, position.thresholds)
    return replace(
        position,
        assets=assets,
        total_value_usd=sum(a.value_usd for a in assets),
        metrics=metrics,
        status=status,
        updated_at=now,
    )


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


class InMemoryRepository(Generic[T]):
    """Dict-backed :class:`Repository`."""

    def __init__(self) -> None:
        self._items: dict[str, Versioned[T]] = {}

    async def get(self, key: str) -> Versioned[T] | None:
        return self._items.get(key)

    async def put(self, key: str, value: T) -> int:
        current = self._items.get(key)
        version = (current.version if current else 0) + 1
        self._items[key] = Versioned(value, version)
        return version

    async def list(self) -> list[T]:
        return [v.value for v in self._items.values()]

    async def compare_and_swap(self, key: str, expected_version: int, value: T) -> bool:
        current = self._items.get(key)
        version = current.version if current else 0
        if version != expected_version:
            return False
        self._items[key] = Versioned(value, version + 1)
        return True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class LoanStore:
    def __init__(
        self,
        clock: Clock | None = None,
        loans: Repository[Loan] | None = None,
        positions: Repository[CollateralPosition] | None = None,
        assessments: Repository[UnderwritingAssessment] | None = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self._loans: Repository[Loan] = loans or InMemoryRepository()
        self._positions: Repository[CollateralPosition] = positions or InMemoryRepository()
        self._assessments: Repository[UnderwritingAssessment] = (
            assessments or InMemoryRepository()
        )
        self._position_by_loan: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, loan_id: str) -> asyncio.Lock:
        return self._locks.setdefault(loan_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    async def add_loan(
        self, loan: Loan, position: CollateralPosition | None = None
    ) -> tuple[Loan, CollateralPosition | None]:
        """Register a new loan, optionally with its collateral position."""
        async with self.lock_for(loan.id):
            if position is not None:
                if position.loan_id != loan.id:
                    raise InvariantViolation(
                        f"Position {position.id} belongs to loan {position.loan_id}"
                    )
                position = replace(position, debt_amount=loan.principal.remaining)
                position = refresh_position(position, self.clock.now())
                loan = _sync_ltv(loan, position)
            if not await self._loans.compare_and_swap(loan.id, 0, loan):
                raise InvariantViolation(f"Loan {loan.id} already exists")
            if position is not None:
                if not await self._positions.compare_and_swap(position.id, 0, position):
                    raise InvariantViolation(f"Position {position.id} already exists")
                self._position_by_loan[loan.id] = position.id
        logger.info("Registered loan %s for user %s", loan.id, loan.user_id)
        return loan, position

    async def get_loan(self, loan_id: str) -> Loan:
        found = await self._loans.get(loan_id)
        if found is None:
            raise NotFoundError("Loan", loan_id)
        return found.value

    async def list_loans(
        self,
        user_id: str | None = None,
        statuses: Iterable[LoanStatus] | None = None,
    ) -> list[Loan]:
        wanted = frozenset(statuses) if statuses is not None else None
        return [
            loan
            for loan in await self._loans.list()
            if (user_id is None or loan.user_id == user_id)
            and (wanted is None or loan.status in wanted)
        ]

    async def update(
        self, loan_id: str, fn: AggregateFn
    ) -> tuple[Loan, CollateralPosition | None]:
        """Apply ``fn`` to the loan aggregate under its lock.

        ``fn`` receives the current loan and position and returns their
        replacements. Anything it raises propagates with nothing written.
        """
        async with self.lock_for(loan_id):
            return await self._apply(loan_id, fn)

    async def update_async(
        self, loan_id: str, fn: AsyncAggregateFn
    ) -> tuple[Loan, CollateralPosition | None]:
        """Like :meth:`update`, but ``fn`` is a coroutine function.

        The lock is held while ``fn`` runs, so it can re-check the current
        state, call a collaborator and return the replacements as a single
        step. ``fn`` must not call locked store methods for the same loan.
        """
        async with self.lock_for(loan_id):
            loan = await self.get_loan(loan_id)
            position = await self.get_position_by_loan(loan_id)
            result = await fn(loan, position)
            return await self._apply(loan_id, lambda l, p: result)

    async def update_loan(self, loan_id: str, fn: Callable[[Loan], Loan]) -> Loan:
        loan, _ = await self.update(loan_id, lambda l, p: (fn(l), p))
        return loan

    async def transition_loan(
        self,
        loan_id: str,
        expected: LoanStatus,
        target: LoanStatus,
        reason: str = "",
        data: Mapping[str, Any] | None = None,
    ) -> Loan | None:
        """Compare-and-set the loan status.

        Returns the updated loan, or ``None`` when the loan is no longer in
        ``expected`` (someone else moved it first).
        """
        async with self.lock_for(loan_id):
            current = await self.get_loan(loan_id)
            if current.status is not expected:
                logger.info(
                    "Skipped %s -> %s on loan %s: status is now %s",
                    expected.value,
                    target.value,
                    loan_id,
                    current.status.value,
                )
                return None

            def _move(loan: Loan, position: CollateralPosition | None):
                now = self.clock.now()
                entry = history_entry(
                    "status_changed",
                    reason or f"{expected.value} -> {target.value}",
                    now,
                    {"from": expected.value, "to": target.value, **(data or {})},
                )
                return replace(loan, status=target, history=loan.history + (entry,)), position

            loan, _ = await self._apply(loan_id, _move)
            return loan

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_position(self, position_id: str) -> CollateralPosition:
        found = await self._positions.get(position_id)
        if found is None:
            raise NotFoundError("Position", position_id)
        return found.value

    async def get_position_by_loan(self, loan_id: str) -> CollateralPosition | None:
        position_id = self._position_by_loan.get(loan_id)
        if position_id is None:
            for position in await self._positions.list():
                if position.loan_id == loan_id:
                    self._position_by_loan[loan_id] = position.id
                    return position
            return None
        return await self.get_position(position_id)

    async def list_positions(self) -> list[CollateralPosition]:
        return await self._positions.list()

    async def update_position(
        self,
        position_id: str,
        fn: Callable[[CollateralPosition], CollateralPosition],
    ) -> CollateralPosition:
        """Apply ``fn`` to a position; derived fields are recomputed after."""
        loan_id = (await self.get_position(position_id)).loan_id

        def _apply_to_position(loan: Loan, position: CollateralPosition | None):
            if position is None or position.id != position_id:
                raise InvariantViolation(f"Position {position_id} detached from loan {loan_id}")
            return loan, fn(position)

        _, position = await self.update(loan_id, _apply_to_position)
        return attached_position(loan_id, position)

    async def mark_liquidated(self, loan_id: str, description: str = "") -> CollateralPosition:
        """Set the position to ``liquidated`` and stop its monitoring flag."""

        def _liquidate(loan: Loan, position: CollateralPosition | None):
            if position is None:
                raise NotFoundError("Position for loan", loan_id)
            entry = history_entry(
                "liquidated", description or "Collateral liquidated", self.clock.now()
            )
            return loan, replace(
                position,
                status=PositionStatus.LIQUIDATED,
                monitoring=replace(position.monitoring, enabled=False),
                history=position.history + (entry,),
            )

        _, position = await self.update(loan_id, _liquidate)
        return attached_position(loan_id, position)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def list_alerts(self, loan_id: str | None = None) -> list[Alert]:
        if loan_id is not None:
            loans = [await self.get_loan(loan_id)]
        else:
            loans = await self.list_loans()
        alerts: list[Alert] = []
        for loan in loans:
            alerts.extend(loan.alerts)
            position = await self.get_position_by_loan(loan.id)
            if position is not None:
                alerts.extend(position.monitoring.alerts)
        return sorted(alerts, key=lambda a: a.created_at)

    async def acknowledge_alert(self, alert_id: str) -> Alert:
        """Stamp ``acknowledged_at``; acknowledging twice keeps the first stamp."""
        for loan in await self.list_loans():
            position = await self.get_position_by_loan(loan.id)
            owned = any(a.id == alert_id for a in loan.alerts) or (
                position is not None
                and any(a.id == alert_id for a in position.monitoring.alerts)
            )
            if not owned:
                continue
            now = self.clock.now()

            def _ack(alerts: tuple[Alert, ...]) -> tuple[Alert, ...]:
                return tuple(
                    replace(a, acknowledged_at=now)
                    if a.id == alert_id and a.acknowledged_at is None
                    else a
                    for a in alerts
                )

            def _apply_ack(l: Loan, p: CollateralPosition | None):
                l = replace(l, alerts=_ack(l.alerts))
                if p is not None:
                    p = replace(p, monitoring=replace(p.monitoring, alerts=_ack(p.monitoring.alerts)))
                return l, p

            l, p = await self.update(loan.id, _apply_ack)
            for a in l.alerts + (p.monitoring.alerts if p else ()):
                if a.id == alert_id:
                    return a
        raise NotFoundError("Alert", alert_id)

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    async def add_assessment(self, assessment: UnderwritingAssessment) -> None:
        if not await self._assessments.compare_and_swap(assessment.id, 0, assessment):
            raise InvariantViolation(f"Assessment {assessment.id} is already recorded")

    async def get_assessment(self, assessment_id: str) -> UnderwritingAssessment:
        found = await self._assessments.get(assessment_id)
        if found is None:
            raise NotFoundError("Assessment", assessment_id)
        return found.value

    async def list_assessments(self, user_id: str | None = None) -> list[UnderwritingAssessment]:
        return [
            a
            for a in await self._assessments.list()
            if user_id is None or a.user_id == user_id
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply(
        self, loan_id: str, fn: AggregateFn
    ) -> tuple[Loan, CollateralPosition | None]:
        loan_rec = await self._loans.get(loan_id)
        if loan_rec is None:
            raise NotFoundError("Loan", loan_id)
        attached = await self.get_position_by_loan(loan_id)
        pos_rec = await self._positions.get(attached.id) if attached else None
        old_position = pos_rec.value if pos_rec else None

        new_loan, new_position = fn(loan_rec.value, old_position)
        now = self.clock.now()

        old_status, new_status = loan_rec.value.status, new_loan.status
        if new_status is not old_status:
            if not can_transition(old_status, new_status):
                logger.error(
                    "Illegal loan transition %s -> %s on %s",
                    old_status.value,
                    new_status.value,
                    loan_id,
                )
                raise InvariantViolation(
                    f"Loan {loan_id} cannot move {old_status.value} -> {new_status.value}"
                )
            if new_loan.is_terminal and new_loan.closed_at is None:
                new_loan = replace(new_loan, closed_at=now)

        if new_position is not None:
            new_position = replace(new_position, debt_amount=new_loan.principal.remaining)
            new_position = refresh_position(new_position, now)
            new_loan = _sync_ltv(new_loan, new_position)
        new_loan = replace(new_loan, updated_at=now)

        if not await self._loans.compare_and_swap(loan_id, loan_rec.version, new_loan):
            logger.error("Concurrent write detected on loan %s", loan_id)
            raise InvariantViolation(f"Loan {loan_id} was written outside its lock")
        if new_position is not None:
            expected = pos_rec.version if pos_rec else 0
            if not await self._positions.compare_and_swap(new_position.id, expected, new_position):
                logger.error("Concurrent write detected on position %s", new_position.id)
                raise InvariantViolation(
                    f"Position {new_position.id} was written outside its lock"
                )
            self._position_by_loan[loan_id] = new_position.id
        return new_loan, new_position


def _sync_ltv(loan: Loan, position: CollateralPosition) -> Loan:
    if loan.ltv.current == position.metrics.current_ltv:
        return loan
    return replace(loan, ltv=replace(loan.ltv, current=position.metrics.current_ltv))
