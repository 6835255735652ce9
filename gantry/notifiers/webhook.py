"""Webhook notifier (Slack-compatible JSON payload)."""

import logging
from typing import Any, Dict, Optional

import requests

from gantry.connectors.base import BaseConnector
from gantry.notifiers.base import Notifier
from gantry.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


class WebhookNotifier(BaseConnector, Notifier):
    """POSTs ``{"text", "channel", "context"}`` to a webhook URL."""

    def __init__(
        self,
        url: str,
        default_channel: Optional[str] = None,
        timeout_seconds: int = 10,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            base_url=url,
            timeout_seconds=timeout_seconds,
            retry_config=retry_config,
            session=session,
        )
        self.default_channel = default_channel

    def notify(self, message: str, channel: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        payload = {
            "text": message,
            "channel": channel or self.default_channel,
            "context": context or {},
        }
        response = self.request("POST", self.base_url, json=payload)
        response.raise_for_status()
        logger.debug(f"Notification delivered to {self.base_url}")
