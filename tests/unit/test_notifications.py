"""Unit tests for notification services."""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from credit_guard.config import EmailConfig, TelegramConfig
from credit_guard.events import EventBus, make_event
from credit_guard.models import Event, EventType, Severity
from credit_guard.notifications.email import EmailNotifier
from credit_guard.notifications.forwarder import AlertForwarder
from credit_guard.notifications.telegram import TelegramNotifier


# ---------------------------------------------------------------------------
# TelegramNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def telegram_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(
            enabled=True,
            alert_bot_token="alert-tok",
            log_bot_token="log-tok",
            chat_id="12345",
        )
    )


@pytest.fixture()
def telegram_notifier_unconfigured() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(enabled=True, alert_bot_token="", log_bot_token="", chat_id="")
    )


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, telegram_notifier: TelegramNotifier) -> None:
        mock_response = AsyncMock()
        mock_response.status = 200
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=None)

        mock_session = AsyncMock()
        mock_session.post = MagicMock(return_value=mock_response)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("credit_guard.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("credit_guard.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is True

    @pytest.mark.asyncio
    async def test_send_alert_failure(self, telegram_notifier: TelegramNotifier) -> None:
        mock_response = AsyncMock()
        mock_response.status = 403
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=None)

        mock_session = AsyncMock()
        mock_session.post = MagicMock(return_value=mock_response)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("credit_guard.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("credit_guard.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_send_log_success(self, telegram_notifier: TelegramNotifier) -> None:
        mock_response = AsyncMock()
        mock_response.status = 200
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=None)

        mock_session = AsyncMock()
        mock_session.post = MagicMock(return_value=mock_response)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("credit_guard.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("credit_guard.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_log("test log")

        assert result is True

    @pytest.mark.asyncio
    async def test_unconfigured_returns_false(
        self, telegram_notifier_unconfigured: TelegramNotifier
    ) -> None:
        result = await telegram_notifier_unconfigured.send_alert("test")
        assert result is False

        result = await telegram_notifier_unconfigured.send_log("test")
        assert result is False


# ---------------------------------------------------------------------------
# EmailNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def email_notifier() -> EmailNotifier:
    return EmailNotifier(
        EmailConfig(
            enabled=True,
            alert_email="test@example.com",
            smtp_server="smtp.example.com",
            smtp_port=587,
            sender_email="sender@example.com",
            sender_password="password123",
        )
    )


@pytest.fixture()
def email_notifier_unconfigured() -> EmailNotifier:
    return EmailNotifier(EmailConfig(enabled=True))


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, email_notifier: EmailNotifier) -> None:
        mock_smtp = MagicMock()
        with patch("credit_guard.notifications.email.smtplib.SMTP", return_value=mock_smtp):
            result = await email_notifier.send_alert("test body", subject="Test")
        assert result is True
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once()
        mock_smtp.send_message.assert_called_once()
        mock_smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_alert_smtp_error(self, email_notifier: EmailNotifier) -> None:
        with patch(
            "credit_guard.notifications.email.smtplib.SMTP",
            side_effect=ConnectionError("SMTP down"),
        ):
            result = await email_notifier.send_alert("test body", subject="Test")
        assert result is False

    @pytest.mark.asyncio
    async def test_no_alert_email_returns_false(
        self, email_notifier_unconfigured: EmailNotifier
    ) -> None:
        result = await email_notifier_unconfigured.send_alert("test")
        assert result is False

    @pytest.mark.asyncio
    async def test_no_credentials_returns_false(self) -> None:
        notifier = EmailNotifier(
            EmailConfig(enabled=True, alert_email="test@example.com")
        )
        result = await notifier.send_alert("test")
        assert result is False

    @pytest.mark.asyncio
    async def test_send_log_is_noop(self, email_notifier: EmailNotifier) -> None:
        result = await email_notifier.send_log("test")
        assert result is False


class TestTelegramPayload:
    @pytest.mark.asyncio
    async def test_alert_subject_prefix_and_escaping(
        self, telegram_notifier: TelegramNotifier
    ) -> None:
        mock_response = AsyncMock()
        mock_response.status = 200
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=None)

        mock_session = AsyncMock()
        mock_session.post = MagicMock(return_value=mock_response)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("credit_guard.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("credit_guard.notifications.telegram.aiohttp.TCPConnector"):
                await telegram_notifier.send_alert("LTV < 80%", subject="CRITICAL")

        url = mock_session.post.call_args.args[0]
        payload = mock_session.post.call_args.kwargs["json"]
        assert "botalert-tok" in url
        assert payload["text"] == "CRITICAL\n\nLTV &lt; 80%"
        assert payload["disable_notification"] is False


# ---------------------------------------------------------------------------
# AlertForwarder
# ---------------------------------------------------------------------------


def _alert_event(severity: Severity) -> Event:
    return make_event(
        EventType.ALERT_TRIGGERED,
        datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        loan_id="loan-1",
        user_id="user-1",
        data={
            "alert_id": "alert-1",
            "severity": severity.value,
            "type": "margin_critical",
            "message": "LTV 82.00% entered critical",
            "ltv": 0.82,
            "health_factor": 1.0366,
            "action_required": "Add collateral or repay",
        },
    )


@pytest.fixture()
def channel() -> MagicMock:
    notifier = MagicMock()
    notifier.send_alert = AsyncMock(return_value=True)
    notifier.send_log = AsyncMock(return_value=True)
    return notifier


class TestAlertForwarder:
    @pytest.mark.asyncio
    async def test_critical_alert_goes_to_alert_channel(self, channel: MagicMock) -> None:
        forwarder = AlertForwarder([channel], Severity.WARNING)
        await forwarder.handle(_alert_event(Severity.CRITICAL))

        channel.send_alert.assert_awaited_once()
        message = channel.send_alert.call_args.args[0]
        assert "Loan: loan-1" in message
        assert "LTV: 82.00%" in message
        assert "Health Factor: 1.04" in message
        assert "Add collateral or repay" in message
        assert "margin_critical" in channel.send_alert.call_args.kwargs["subject"]
        channel.send_log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alert_below_threshold_is_logged(self, channel: MagicMock) -> None:
        forwarder = AlertForwarder([channel], Severity.CRITICAL)
        await forwarder.handle(_alert_event(Severity.WARNING))

        channel.send_alert.assert_not_awaited()
        channel.send_log.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_activity_event_is_logged(self, channel: MagicMock) -> None:
        forwarder = AlertForwarder([channel])
        event = make_event(
            EventType.COLLATERAL_TOPPED_UP,
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            loan_id="loan-1",
            data={"asset": "USDT", "amount": 1000},
        )
        await forwarder.handle(event)

        message = channel.send_log.call_args.args[0]
        assert message.startswith("📊 collateral topped up · loan-1")
        assert "amount: 1000" in message

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self, channel: MagicMock) -> None:
        broken = MagicMock()
        broken.send_alert = AsyncMock(side_effect=RuntimeError("down"))
        forwarder = AlertForwarder([broken, channel])

        await forwarder.handle(_alert_event(Severity.CRITICAL))

        channel.send_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attach_subscribes_to_bus(self, channel: MagicMock) -> None:
        bus = EventBus()
        AlertForwarder([channel]).attach(bus)

        bus.publish(_alert_event(Severity.CRITICAL))
        bus.publish(
            make_event(EventType.LOAN_REQUESTED, datetime(2024, 1, 1, tzinfo=timezone.utc))
        )
        await bus.join()
        await bus.aclose()

        channel.send_alert.assert_awaited_once()
        channel.send_log.assert_not_awaited()
