"""
Webhook Notifier for Questline.

Sends incident notifications via HTTP webhooks (e.g., Slack, Discord, custom endpoints).
"""
from typing import Any, Dict, Optional

import httpx

from core.logger import get_logger
from interface.notifiers.base import BaseNotifier, Notification

logger = get_logger("notifier.webhook")


class WebhookNotifier(BaseNotifier):
    """Send notifications via HTTP webhooks."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.webhook_url = self.config.get("webhook_url", "")
        self.webhook_type = self.config.get("type", "generic")  # generic, slack, discord
        self.timeout_seconds = float(self.config.get("timeout_seconds", 10.0))

    def send(self, notification: Notification) -> bool:
        """Send a webhook notification."""
        if not self.is_available():
            return False

        payload = self._build_payload(notification)

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.webhook_url,
                    json=payload,
                    headers={"Content-Type": "application/json"}
                )
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Webhook rejected notification: HTTP {response.status_code}")
            return False
        return True

    def _build_payload(self, notification: Notification) -> Dict[str, Any]:
        """Build webhook payload based on type."""
        if self.webhook_type == "slack":
            return {
                "text": f"*{notification.title}*\n{notification.message}"
            }
        elif self.webhook_type == "discord":
            return {
                "content": f"**{notification.title}**\n{notification.message}"
            }
        else:
            # Generic webhook
            return {
                "title": notification.title,
                "message": notification.message,
                "priority": notification.priority.value,
                "timestamp": notification.created_at,
                "action_required": notification.action_required,
                "data": notification.data,
            }

    def get_name(self) -> str:
        return "webhook"

    def is_available(self) -> bool:
        return bool(self.enabled and self.webhook_url)
