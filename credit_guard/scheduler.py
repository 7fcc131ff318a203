"""Clocks and per-entity tickers.

Each monitored entity gets its own :class:`Ticker` task, so a slow or
failing tick on one entity never delays another. Time is read through a
:class:`Clock`; tests inject :class:`ManualClock` and step it explicitly.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[None]]


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Clock that only moves when :meth:`advance` is called.

    Sleepers are woken in deadline order and the event loop is given a few
    turns after each wake-up so the woken tasks can finish their work before
    the clock moves on.
    """

    SETTLE_ROUNDS = 50

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._seq = itertools.count()
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []

    def now(self) -> datetime:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._elapsed + seconds, next(self._seq), fut))
        await fut

    async def advance(self, seconds: float) -> None:
        target = self._elapsed + seconds
        while self._sleepers and self._sleepers[0][0] <= target:
            wake_at, _, fut = heapq.heappop(self._sleepers)
            self._move_to(wake_at)
            if not fut.done():
                fut.set_result(None)
            await self.settle()
        self._move_to(target)
        await self.settle()

    async def settle(self) -> None:
        for _ in range(self.SETTLE_ROUNDS):
            await asyncio.sleep(0)

    def _move_to(self, elapsed: float) -> None:
        if elapsed > self._elapsed:
            self._now += timedelta(seconds=elapsed - self._elapsed)
            self._elapsed = elapsed


# ---------------------------------------------------------------------------
# Ticker
# ---------------------------------------------------------------------------


class Ticker:
    """Runs ``fn`` every ``interval`` seconds until stopped.

    Each tick is bounded by ``timeout``. A tick that fails or times out is
    logged and the next tick still runs.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: TickFn,
        clock: Clock,
        timeout: float | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("Ticker interval must be positive")
        self.name = name
        self.interval = interval
        self.timeout = timeout
        self.ticks = 0
        self.failures = 0
        self._fn = fn
        self._clock = clock
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")

    def pause(self) -> None:
        self._resumed.clear()

    def resume(self) -> None:
        self._resumed.set()

    async def stop(self) -> None:
        self._stopped = True
        self._resumed.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._stopped:
            await self._clock.sleep(self.interval)
            await self._resumed.wait()
            if self._stopped:
                break
            await self._tick()

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            if self.timeout is None:
                await self._fn()
            else:
                await asyncio.wait_for(self._fn(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning("Tick %s timed out after %.1fs", self.name, self.timeout)
        except Exception:
            self.failures += 1
            logger.exception("Tick %s failed", self.name)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """Registry of tickers keyed by entity id."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._tickers: dict[str, Ticker] = {}

    def schedule(
        self, key: str, interval: float, fn: TickFn, timeout: float | None = None
    ) -> Ticker:
        existing = self._tickers.get(key)
        if existing is not None and existing.running:
            return existing
        ticker = Ticker(key, interval, fn, self.clock, timeout=timeout)
        self._tickers[key] = ticker
        ticker.start()
        logger.debug("Scheduled %s every %.1fs", key, interval)
        return ticker

    def get(self, key: str) -> Ticker | None:
        return self._tickers.get(key)

    def is_scheduled(self, key: str) -> bool:
        ticker = self._tickers.get(key)
        return ticker is not None and ticker.running

    def active(self) -> list[str]:
        return [k for k, t in self._tickers.items() if t.running]

    def pause(self, key: str) -> bool:
        ticker = self._tickers.get(key)
        if ticker is None:
            return False
        ticker.pause()
        return True

    def resume(self, key: str) -> bool:
        ticker = self._tickers.get(key)
        if ticker is None:
            return False
        ticker.resume()
        return True

    async def cancel(self, key: str) -> bool:
        ticker = self._tickers.pop(key, None)
        if ticker is None:
            return False
        await ticker.stop()
        return True

    async def shutdown(self) -> None:
        keys = list(self._tickers)
        for key in keys:
            await self.cancel(key)
        logger.info("Scheduler stopped (%d tickers)", len(keys))
