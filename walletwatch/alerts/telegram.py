"""
Telegram Alerts
===============

Telegram delivery for wallet monitoring notifications.

Each monitored wallet names its own subscriber (a Telegram chat id); this
module only knows how to get a piece of HTML text into a chat.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

import requests

from ..config import config as app_config

logger = logging.getLogger(__name__)

# Rate limiting constants
MIN_MESSAGE_INTERVAL_SECONDS = 0.1  # Telegram limit: 30 msgs/sec across chats
MAX_MESSAGES_PER_MINUTE = 60  # Global rate limit

DEFAULT_TEST_MESSAGE = "🧪 Test notification from the wallet monitoring service!"


@dataclass
class AlertConfig:
    """Configuration for alert sending."""
    bot_token: str
    dry_run: bool = False
    timeout: float = 10.0
    max_message_length: int = 4000
    min_message_interval: float = MIN_MESSAGE_INTERVAL_SECONDS
    max_per_minute: int = MAX_MESSAGES_PER_MINUTE


class TelegramAlerts:
    """
    Telegram notification sink.

    `send(subscriber_id, text)` is the contract the monitor relies on: it never
    raises and reports success as a bool.
    """

    def __init__(self, config: AlertConfig):
        """
        Initialize Telegram alerts.

        Args:
            config: AlertConfig with bot token and settings
        """
        self.config = config
        self._validate()

        # Rate limiting state
        self._last_message_time: float = 0
        self._sent_this_minute: List[float] = []
        self._rate_lock = threading.Lock()

    @classmethod
    def from_env(cls, dry_run: bool = False) -> Optional["TelegramAlerts"]:
        """
        Create TelegramAlerts from environment variables.

        Returns:
            TelegramAlerts instance if configured (or dry run), None otherwise
        """
        bot_token = app_config.telegram_bot_token or ""

        if not bot_token and not dry_run:
            logger.warning("Telegram not configured (set TELEGRAM_BOT_TOKEN) - notifications disabled")
            return None

        return cls(AlertConfig(
            bot_token=bot_token,
            dry_run=dry_run,
            timeout=app_config.telegram_timeout_sec,
            max_message_length=app_config.max_message_length,
        ))

    def _validate(self):
        """Validate configuration."""
        if not self.config.dry_run and not self.config.bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required (or use --dry-run)")

    def _check_rate_limit(self) -> bool:
        """
        Check if we're within rate limits.

        Returns:
            True if we can send, False if rate limited
        """
        now = time.time()
        self._sent_this_minute = [t for t in self._sent_this_minute if now - t < 60]

        if len(self._sent_this_minute) >= self.config.max_per_minute:
            logger.warning(f"Rate limited: {len(self._sent_this_minute)} messages in last minute")
            return False
        return True

    def _enforce_message_interval(self):
        """Enforce minimum interval between messages."""
        elapsed = time.time() - self._last_message_time
        if elapsed < self.config.min_message_interval:
            time.sleep(self.config.min_message_interval - elapsed)

    def _truncate_message(self, text: str) -> str:
        """Truncate message to Telegram's character limit."""
        if len(text) > self.config.max_message_length:
            return text[:self.config.max_message_length - 20] + "\n... (truncated)"
        return text

    def send_message(self, chat_id: str, text: str) -> Optional[int]:
        """
        Send a message via Telegram Bot API.

        Args:
            chat_id: Destination chat
            text: Message text (HTML formatted)

        Returns:
            message_id if successful, None otherwise
        """
        if not chat_id:
            logger.error("Telegram send skipped: empty chat id")
            return None

        text = self._truncate_message(text)

        if self.config.dry_run:
            logger.info(f"[DRY RUN] Would send Telegram message to {chat_id}:\n{text}")
            print(f"\n{'='*60}")
            print(f"[DRY RUN] Telegram -> {chat_id}")
            print("="*60)
            print(text.replace("<b>", "").replace("</b>", "").replace("<code>", "").replace("</code>", ""))
            print("="*60 + "\n")
            return 999999

        # Sends come from worker threads; reserve the slot under the lock
        with self._rate_lock:
            if not self._check_rate_limit():
                logger.warning("Message dropped due to rate limiting")
                return None

            self._enforce_message_interval()
            now = time.time()
            self._last_message_time = now
            self._sent_this_minute.append(now)

        url = f"https://api.telegram.org/bot{self.config.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        try:
            response = requests.post(url, json=payload, timeout=self.config.timeout)
            response.raise_for_status()

            result = response.json()
            if not result.get("ok", True):
                logger.error(f"Telegram rejected message: {result.get('description')}")
                return None
            message_id = result.get("result", {}).get("message_id")

            logger.info(f"Telegram message sent to {chat_id} (message_id: {message_id})")
            return message_id

        except requests.exceptions.Timeout:
            logger.error("Telegram request timed out")
            return None
        except requests.exceptions.HTTPError as e:
            # Log status code without exposing token in URL
            status_code = e.response.status_code if e.response is not None else "unknown"
            logger.error(f"Telegram HTTP error: {status_code}")
            if status_code == 429:
                logger.warning("Telegram rate limit hit (429) - backing off")
            return None
        except requests.exceptions.ConnectionError:
            logger.error("Telegram connection error - network issue")
            return None
        except requests.exceptions.RequestException:
            # Generic request error - don't log exception details which may contain URL/token
            logger.error("Telegram request failed")
            return None
        except ValueError:
            logger.error("Telegram returned a non-JSON response")
            return None

    def send(self, subscriber_id: str, text: str) -> bool:
        """Deliver `text` to a subscriber. True on success."""
        return self.send_message(subscriber_id, text) is not None


def send_test_alert(chat_id: str, bot_token: str = None, dry_run: bool = False) -> bool:
    """
    Send a test alert to verify Telegram configuration.

    Args:
        chat_id: Chat to send the test message to
        bot_token: Telegram bot token (default: from env)
        dry_run: If True, print message instead of sending

    Returns:
        True if successful
    """
    if bot_token is None:
        bot_token = app_config.telegram_bot_token or ""

    alerts = TelegramAlerts(AlertConfig(bot_token=bot_token, dry_run=dry_run))
    return alerts.send(chat_id, DEFAULT_TEST_MESSAGE)
