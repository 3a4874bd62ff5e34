import asyncio
import logging
import smtplib
from email.message import EmailMessage

import httpx

from conveyor.config import config
from conveyor.exceptions import NotificationError
from conveyor.schemas.pipeline import Severity

logger = logging.getLogger(__name__)

SLACK_COLORS = {
    Severity.info: '#439FE0',
    Severity.good: 'good',
    Severity.warning: 'warning',
    Severity.danger: 'danger',
}


class SlackNotifier:
    webhook_url: str

    def __init__(self, webhook_url: str):
        self.webhook_url = webhook_url

    async def notify(
        self, channel: str, message: str, severity: Severity, subject: str | None = None
    ):
        text = f'*{subject}*\n{message}' if subject else message
        payload = {
            'channel': channel,
            'attachments': [{'color': SLACK_COLORS[severity], 'text': text}],
        }
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NotificationError(f'Slack notification to {channel} failed: {e}')


class EmailNotifier:
    host: str
    port: int
    sender: str

    def __init__(self, host: str, port: int, sender: str):
        self.host = host
        self.port = port
        self.sender = sender

    def _send(self, msg: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.send_message(msg)

    async def notify(
        self, channel: str, message: str, severity: Severity, subject: str | None = None
    ):
        msg = EmailMessage()
        msg['From'] = self.sender
        msg['To'] = channel.removeprefix('mailto:')
        msg['Subject'] = subject or f'[{severity.value}] conveyor notification'
        msg.set_content(message)
        try:
            await asyncio.to_thread(self._send, msg)
        except (OSError, smtplib.SMTPException) as e:
            raise NotificationError(f'E-mail to {msg["To"]} failed: {e}')


class NotificationRouter:
    """Sends ``#channel`` and ``@user`` to Slack, addresses and ``mailto:`` to e-mail."""

    slack: SlackNotifier | None
    email: EmailNotifier | None

    def __init__(self, slack: SlackNotifier | None, email: EmailNotifier | None):
        self.slack = slack
        self.email = email

    @classmethod
    def from_config(cls) -> 'NotificationRouter':
        slack = email = None
        if config.slack_webhook_url is not None:
            slack = SlackNotifier(config.slack_webhook_url.get_secret_value())
        if config.smtp_host:
            email = EmailNotifier(config.smtp_host, config.smtp_port, config.smtp_sender)
        return cls(slack, email)

    @staticmethod
    def is_email(channel: str) -> bool:
        return channel.startswith('mailto:') or (
            '@' in channel and not channel.startswith(('@', '#'))
        )

    async def notify(
        self, channel: str, message: str, severity: Severity, subject: str | None = None
    ):
        if self.is_email(channel):
            target, name = self.email, 'E-mail'
        else:
            target, name = self.slack, 'Slack'
        if target is None:
            raise NotificationError(f'{name} is not configured, cannot notify {channel}')
        logger.debug(f'Notifying {channel} via {name}')
        await target.notify(channel, message, severity, subject)
