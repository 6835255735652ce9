"""Notification channels."""

from .base import LogNotifier, Notifier
from .webhook import WebhookNotifier

__all__ = ["LogNotifier", "Notifier", "WebhookNotifier"]
