"""Forwards bus events to notification channels."""
from __future__ import annotations

import logging
from typing import Sequence

from ..events import EventBus
from ..interfaces.notifier import Notifier
from ..models import SEVERITY_RANK, Event, EventType, Severity

logger = logging.getLogger(__name__)

_SUBJECTS = {
    Severity.CRITICAL: "🚨 CRITICAL",
    Severity.WARNING: "⚠️ WARNING",
    Severity.INFO: "ℹ️ INFO",
}

# Events worth a log line in the activity channel.
LOGGED_EVENTS = frozenset(
    {
        EventType.MARGIN_CALL_TRIGGERED,
        EventType.MARGIN_CALL_RESOLVED,
        EventType.LIQUIDATION_TRIGGERED,
        EventType.COLLATERAL_TOPPED_UP,
        EventType.COLLATERAL_REBALANCED,
        EventType.COLLATERAL_WITHDRAWN,
        EventType.LOAN_DISBURSED,
        EventType.LOAN_CLOSED,
        EventType.LOAN_DEFAULTED,
    }
)


class AlertForwarder:
    """Sends alerts at or above ``min_severity`` as alerts, the rest as logs."""

    def __init__(
        self, notifiers: Sequence[Notifier], min_severity: Severity = Severity.WARNING
    ) -> None:
        self._notifiers = list(notifiers)
        self._min_rank = SEVERITY_RANK[min_severity]

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(
            self.handle,
            name="notifications",
            types=LOGGED_EVENTS | {EventType.ALERT_TRIGGERED},
        )

    async def handle(self, event: Event) -> None:
        if event.type is EventType.ALERT_TRIGGERED:
            severity = Severity(event.data.get("severity", Severity.INFO.value))
            message = self._format_alert(event, severity)
            if SEVERITY_RANK[severity] >= self._min_rank:
                alert_type = event.data.get("type", "alert")
                await self._send_alert(message, subject=f"{_SUBJECTS[severity]}: {alert_type}")
            else:
                await self._send_log(message)
            return
        await self._send_log(self._format_activity(event))

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _stamp(event: Event) -> str:
        return event.timestamp.strftime("%Y-%m-%d %H:%M:%S")

    def _format_alert(self, event: Event, severity: Severity) -> str:
        data = event.data
        lines = [f"{_SUBJECTS[severity]}: {data.get('message', '')}", ""]
        if event.loan_id:
            lines.append(f"Loan: {event.loan_id}")
        if "ltv" in data:
            lines.append(f"LTV: {float(data['ltv']) * 100:.2f}%")
        if "health_factor" in data:
            lines.append(f"Health Factor: {float(data['health_factor']):.2f}")
        if data.get("action_required"):
            lines.extend(["", str(data["action_required"])])
        lines.extend(["", f"{self._stamp(event)} UTC"])
        return "\n".join(lines)

    def _format_activity(self, event: Event) -> str:
        details = " · ".join(f"{k}: {v}" for k, v in sorted(event.data.items()))
        head = f"📊 {event.type.value.replace('_', ' ')}"
        if event.loan_id:
            head += f" · {event.loan_id}"
        body = f"\n{details}" if details else ""
        return f"{head}{body}\n\n{self._stamp(event)} UTC"

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = True) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)
