"""In-process event bus.

Every subscriber owns a queue and a worker task. ``publish`` never blocks
and never raises on a subscriber's behalf; a handler that fails is retried
up to ``max_attempts`` times, then the event is dropped for that subscriber
only.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from .models import Event, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Union[Awaitable[None], None]]

CATEGORY_BY_PREFIX = {
    "loan": "loan",
    "collateral": "collateral",
    "margin": "risk",
    "liquidation": "risk",
    "alert": "alert",
    "provider": "provider",
}


def make_event(
    type: EventType,
    timestamp: datetime,
    loan_id: str | None = None,
    user_id: str | None = None,
    data: Mapping[str, Any] | None = None,
) -> Event:
    category = CATEGORY_BY_PREFIX.get(type.value.split("_", 1)[0], "system")
    return Event(
        id=f"evt-{uuid.uuid4().hex[:12]}",
        type=type,
        category=category,
        timestamp=timestamp,
        loan_id=loan_id,
        user_id=user_id,
        data=dict(data or {}),
    )


@dataclass
class _Subscription:
    name: str
    handler: Handler
    types: frozenset[EventType] | None
    queue: asyncio.Queue[Event] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None
    delivered: int = 0
    dropped: int = 0

    def wants(self, event: Event) -> bool:
        return self.types is None or event.type in self.types


class EventBus:
    """Fan-out dispatcher with at-least-once delivery per subscriber."""

    def __init__(self, max_attempts: int = 3) -> None:
        self.max_attempts = max_attempts
        self._subs: dict[str, _Subscription] = {}

    def subscribe(
        self,
        handler: Handler,
        name: str | None = None,
        types: Iterable[EventType] | None = None,
    ) -> str:
        name = name or f"sub-{len(self._subs) + 1}"
        if name in self._subs:
            raise ValueError(f"Subscriber '{name}' already registered")
        self._subs[name] = _Subscription(
            name=name,
            handler=handler,
            types=frozenset(types) if types is not None else None,
        )
        return name

    async def unsubscribe(self, name: str) -> None:
        sub = self._subs.pop(name, None)
        if sub is not None:
            await self._stop(sub)

    def publish(self, event: Event) -> None:
        for sub in self._subs.values():
            if not sub.wants(event):
                continue
            if sub.worker is None or sub.worker.done():
                sub.worker = asyncio.create_task(
                    self._drain(sub), name=f"events:{sub.name}"
                )
            sub.queue.put_nowait(event)
        logger.debug("Published %s (%s)", event.type.value, event.id)

    def stats(self) -> dict[str, tuple[int, int]]:
        """``{subscriber: (delivered, dropped)}``."""
        return {n: (s.delivered, s.dropped) for n, s in self._subs.items()}

    async def join(self) -> None:
        """Wait until every queued event has been handled or dropped."""
        for sub in list(self._subs.values()):
            await sub.queue.join()

    async def aclose(self) -> None:
        await self.join()
        for sub in list(self._subs.values()):
            await self._stop(sub)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _drain(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await self._deliver(sub, event)
            finally:
                sub.queue.task_done()

    async def _deliver(self, sub: _Subscription, event: Event) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
                sub.delivered += 1
                return
            except Exception:
                logger.warning(
                    "Subscriber %s failed on %s (attempt %d/%d)",
                    sub.name,
                    event.type.value,
                    attempt,
                    self.max_attempts,
                    exc_info=True,
                )
        sub.dropped += 1
        logger.error(
            "Subscriber %s dropped event %s after %d attempts",
            sub.name,
            event.id,
            self.max_attempts,
        )

    @staticmethod
    async def _stop(sub: _Subscription) -> None:
        worker, sub.worker = sub.worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
