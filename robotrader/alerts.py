"""
Alert system for RoboTrader.
Provides email and Telegram notifications for run summaries and broker failures.
"""

import asyncio
import os
from datetime import datetime
from typing import Dict, Any, Optional
from dataclasses import dataclass
from enum import Enum
import smtplib
from email.mime.text import MIMEText

try:
    from telegram import Bot
    from telegram.error import TelegramError
    TELEGRAM_AVAILABLE = True
except ImportError:
    TELEGRAM_AVAILABLE = False

from .logging_utils import get_trading_logger


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(Enum):
    """Types of alerts."""
    RUN_SUMMARY = "run_summary"
    CONNECTION_ERROR = "connection_error"
    ORDER_REJECTION = "order_rejection"
    COOKIE_EXPIRED = "cookie_expired"
    CAPTCHA_BLOCKED = "captcha_blocked"


@dataclass
class Alert:
    """Alert message structure."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    recipient: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def format_telegram(self) -> str:
        """Format alert for Telegram."""
        lines = [
            f"*[{self.severity.value.upper()}] {self.title}*",
            "",
            self.message,
            "",
            f"_Time: {self.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}_"
        ]
        return "\n".join(lines)


class TelegramNotifier:
    """Sends alerts via Telegram."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        enabled: bool = True
    ):
        if not TELEGRAM_AVAILABLE:
            raise ImportError("python-telegram-bot is required for Telegram notifications")

        self.chat_id = chat_id
        self.enabled = enabled
        self.bot = Bot(token=bot_token) if enabled else None
        self.logger = get_trading_logger()

    async def send_async(self, alert: Alert) -> bool:
        """
        Send alert asynchronously.

        Args:
            alert: Alert to send

        Returns:
            True if sent successfully
        """
        if not self.enabled or not self.bot:
            return False

        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=alert.format_telegram(),
                parse_mode='Markdown'
            )
            return True
        except TelegramError as e:
            self.logger.log_alert(
                alert_type="telegram_error",
                severity="warning",
                message=f"Failed to send Telegram alert: {e}"
            )
            return False


class EmailNotifier:
    """Sends plain-text email via SMTP with STARTTLS."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        username: str,
        password: str,
        recipient: str,
        sender: Optional[str] = None,
        enabled: bool = True
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server host
            smtp_port: SMTP server port
            username: SMTP username
            password: SMTP password
            recipient: Default email recipient
            sender: Email sender (defaults to username)
            enabled: Whether notifications are enabled
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.recipient = recipient
        self.sender = sender or username
        self.enabled = enabled
        self.logger = get_trading_logger()

    def send_text(self, to_address: str, subject: str, body: str) -> bool:
        """
        Send a plain-text message.

        Returns:
            True if sent successfully
        """
        if not self.enabled:
            return False

        try:
            msg = MIMEText(body, 'plain')
            msg['Subject'] = subject
            msg['From'] = self.sender
            msg['To'] = to_address

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.username, self.password)
                server.send_message(msg)

            self.logger.logger.info("email_sent", to=to_address, subject=subject)
            return True

        except (smtplib.SMTPException, OSError) as e:
            self.logger.log_alert(
                alert_type="email_error",
                severity="warning",
                message=f"Failed to send email to {to_address}: {e}"
            )
            return False

    def send(self, alert: Alert) -> bool:
        """Send an alert to its recipient (or the default one)."""
        subject = f"[RoboTrader] {alert.severity.value.upper()}: {alert.title}"
        return self.send_text(alert.recipient or self.recipient, subject, alert.message)


class AlertManager:
    """
    Manages alert routing and delivery.
    Central point for all system alerts.
    """

    def __init__(self, settings: Dict[str, Any]):
        """
        Initialize alert manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = get_trading_logger()

        alert_settings = settings.get('alerts', {}) or {}
        self.enabled = alert_settings.get('enabled', True)

        self.telegram: Optional[TelegramNotifier] = None
        self.email: Optional[EmailNotifier] = None

        self._init_telegram(alert_settings)
        self._init_email(alert_settings)

    def _init_telegram(self, settings: Dict[str, Any]) -> None:
        """Initialize Telegram notifier."""
        telegram_settings = settings.get('telegram', {}) or {}
        if telegram_settings.get('enabled', False):
            bot_token = os.environ.get('TELEGRAM_BOT_TOKEN', telegram_settings.get('bot_token'))
            chat_id = os.environ.get('TELEGRAM_CHAT_ID', telegram_settings.get('chat_id'))

            if bot_token and chat_id and TELEGRAM_AVAILABLE:
                self.telegram = TelegramNotifier(
                    bot_token=bot_token,
                    chat_id=chat_id,
                    enabled=True
                )
            else:
                self.logger.log_alert(
                    alert_type="telegram_init_error",
                    severity="warning",
                    message="Telegram enabled but token, chat id or library is missing"
                )

    def _init_email(self, settings: Dict[str, Any]) -> None:
        """Initialize email notifier."""
        email_settings = settings.get('email', {}) or {}
        if email_settings.get('enabled', False):
            self.email = EmailNotifier(
                smtp_host=os.environ.get('EMAIL_SMTP_HOST', email_settings.get('smtp_host', 'smtp.gmail.com')),
                smtp_port=int(os.environ.get('EMAIL_SMTP_PORT', email_settings.get('smtp_port', 587))),
                username=os.environ.get('EMAIL_USERNAME', email_settings.get('username', '')),
                password=os.environ.get('EMAIL_PASSWORD', email_settings.get('password', '')),
                recipient=os.environ.get('EMAIL_RECIPIENT', email_settings.get('recipient', '')),
                sender=email_settings.get('sender'),
                enabled=True
            )

    async def send_alert(self, alert: Alert) -> Dict[str, bool]:
        """
        Send alert through all configured channels.

        SMTP is blocking, so it runs in a worker thread to keep the event
        loop responsive for concurrently running strategies.

        Returns:
            Dict mapping channel to success status
        """
        if not self.enabled:
            return {}

        results = {}

        self.logger.log_alert(
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            message=alert.message,
            metadata=alert.metadata
        )

        if self.telegram and alert.severity is not AlertSeverity.INFO:
            results['telegram'] = await self.telegram.send_async(alert)

        # Run summaries always go out by email, other alerts from WARNING up
        if self.email and (
            alert.alert_type is AlertType.RUN_SUMMARY
            or alert.severity in (AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL)
        ):
            results['email'] = await asyncio.to_thread(self.email.send, alert)

        return results

    async def send_run_summary(self, recipient: Optional[str], subject: str, body: str) -> Dict[str, bool]:
        """Send the end-of-run log as a plain-text message."""
        alert = Alert(
            alert_type=AlertType.RUN_SUMMARY,
            severity=AlertSeverity.INFO,
            title=subject,
            message=body,
            timestamp=datetime.utcnow(),
            recipient=recipient,
        )
        if not self.enabled:
            return {}
        results = {}
        if self.email:
            to_address = recipient or self.email.recipient
            results['email'] = await asyncio.to_thread(self.email.send_text, to_address, subject, body)
        else:
            self.logger.log_alert(
                alert_type=alert.alert_type.value,
                severity=alert.severity.value,
                message=f"{subject}\n{body}"
            )
        return results

    async def send_connection_error(self, error_message: str) -> None:
        """Send connection error alert."""
        await self.send_alert(Alert(
            alert_type=AlertType.CONNECTION_ERROR,
            severity=AlertSeverity.ERROR,
            title="Broker Connection Error",
            message=error_message,
            timestamp=datetime.utcnow()
        ))

    async def send_order_rejection(self, ticker: str, side: str, quantity: int, reason: str) -> None:
        """Send order rejection alert."""
        await self.send_alert(Alert(
            alert_type=AlertType.ORDER_REJECTION,
            severity=AlertSeverity.WARNING,
            title="Order Rejected",
            message=f"Order {side} {quantity} {ticker} was rejected.\nReason: {reason}",
            timestamp=datetime.utcnow()
        ))
