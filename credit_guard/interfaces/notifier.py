"""Notifier protocol: channel that delivers loan and collateral alerts."""
from typing import Protocol


class Notifier(Protocol):
    """Abstract interface for sending notifications.

    ``send_alert`` carries alerts that need attention; ``send_log`` carries
    routine activity (top-ups, status changes) and may be delivered silently.
    """

    async def send_alert(self, message: str, subject: str = "") -> bool: ...

    async def send_log(self, message: str, silent: bool = True) -> bool: ...
