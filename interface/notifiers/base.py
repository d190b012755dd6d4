"""
Base Notifier for Questline.

Incident reporting hands notifications to every configured notifier;
delivery failure is logged and never propagated to the cascade that raised it.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.logger import get_logger

logger = get_logger("notifier")


class NotificationPriority(Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Notification:
    """A notification to be sent."""
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    created_at: Optional[str] = None
    action_required: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()


class BaseNotifier(ABC):
    """Base class for all notifiers."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.enabled = self.config.get("enabled", True)

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """
        Send a notification.

        Returns:
            True if sent successfully, False otherwise.
        """

    @abstractmethod
    def get_name(self) -> str:
        """Return the notifier name."""

    def is_available(self) -> bool:
        """Check if this notifier is available for use."""
        return self.enabled


class LogNotifier(BaseNotifier):
    """Writes notifications to the questline log; always available."""

    _LEVELS = {
        NotificationPriority.LOW: "info",
        NotificationPriority.NORMAL: "info",
        NotificationPriority.HIGH: "warning",
        NotificationPriority.URGENT: "error",
    }

    def send(self, notification: Notification) -> bool:
        if not self.enabled:
            return False
        log = getattr(logger, self._LEVELS[notification.priority])
        log(f"[{notification.title}] {notification.message}")
        return True

    def get_name(self) -> str:
        return "log"
