"""Notifier interface for ``notify`` steps and post hooks."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def notify(self, message: str, channel: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        """Deliver ``message``. Failures raise; the calling step decides what that means."""


class LogNotifier(Notifier):
    """Writes notifications to the log and keeps them for inspection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, message: str, channel: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"[notify{':' + channel if channel else ''}] {message}")
        self.sent.append({"message": message, "channel": channel, "context": context or {}})
