import logging
from typing import Optional

import requests

from rewards_tracker.config import NotifierSettings

logger = logging.getLogger(__name__)


class Notifier:
    """Posts messages to a Slack incoming webhook. Does nothing when no webhook is configured."""

    def __init__(self, settings: Optional[NotifierSettings] = None, timeout: float = 10.0):
        self.config = settings or NotifierSettings()
        self.webhook = self.config.slack_webhook
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook)

    def send(self, message: str) -> bool:
        """Send a message. Delivery failures are logged, never raised."""
        if not self.webhook:
            logger.debug("Slack webhook not configured, dropping: %s", message)
            return False

        try:
            response = requests.post(self.webhook, json={"text": message}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Failed to send Slack message: %s", e)
            return False
        return True
