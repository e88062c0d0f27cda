import html
import logging

import requests

from ..exceptions import NotificationFailure
from ..models import RouteStatus, utcnow

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


def format_route_change_alert(prefix, description, previous_path, current_path, status, now=None):
    """Builds the HTML message for one route transition."""
    status = RouteStatus(status)
    if status is RouteStatus.NOT_IN_TABLE:
        emoji, status_text = '⚠️', 'WITHDRAWN'
    else:
        emoji, status_text = '🔄', 'CHANGED'
    now = now or utcnow()

    lines = [
        f"{emoji} <b>BGP Route {status_text}</b>",
        "",
        f"<b>Prefix:</b> <code>{html.escape(prefix)}</code>",
    ]
    if description:
        lines.append(f"<b>Description:</b> {html.escape(description)}")
    lines += [
        f"<b>Previous Path:</b> <code>{html.escape(previous_path or '')}</code>",
        f"<b>Current Path:</b> <code>{html.escape(current_path or '')}</code>",
        f"<b>Status:</b> {status.value}",
        f"<b>Time:</b> {now.strftime('%Y-%m-%d %H:%M:%S')} UTC",
    ]
    return "\n".join(lines) + "\n"


class TelegramNotifier:
    """Sends route change alerts to a Telegram chat. Delivery is best-effort."""

    def __init__(self, bot_token, chat_id, enabled=True, api_base=TELEGRAM_API_BASE, timeout=10):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        telegram = config['telegram']
        return cls(
            bot_token=telegram.get('bot_token'),
            chat_id=telegram.get('chat_id'),
            enabled=telegram.get('enabled', True),
            api_base=telegram.get('api_base', TELEGRAM_API_BASE),
            timeout=telegram.get('timeout', 10),
        )

    @property
    def configured(self):
        return bool(self.bot_token and self.chat_id)

    def _redact(self, text):
        return text.replace(self.bot_token, '<redacted>') if self.bot_token else text

    def send_message(self, message):
        """
        Posts message to the chat.

        Raises:
            NotificationFailure: on network errors or a non-2xx response
        """
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        data = {'chat_id': self.chat_id, 'text': message, 'parse_mode': 'HTML'}
        try:
            response = requests.post(url, data=data, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise NotificationFailure(self._redact(str(e))) from e

    def notify(self, prefix, description, previous_path, current_path, status):
        """Returns True if the alert was delivered."""
        if not self.enabled or not self.configured:
            return False

        message = format_route_change_alert(prefix, description, previous_path, current_path, status)
        try:
            self.send_message(message)
        except NotificationFailure as e:
            logger.warning(f"Telegram alert for {prefix} not delivered: {e}")
            return False
        logger.info(f"Telegram alert sent for {prefix}")
        return True
