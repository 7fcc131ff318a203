"""Notification channels and the bus-to-channel forwarder."""
from .email import EmailNotifier
from .forwarder import AlertForwarder
from .telegram import TelegramNotifier

__all__ = ["AlertForwarder", "EmailNotifier", "TelegramNotifier"]
