"""Post-commit user notifications

Notifications are not idempotent, so they are sent only after a
reconciliation has been committed, and a failure to send never changes the
webhook response.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)

# Notification kinds and their titles
NOTIFICATION_TITLES = {
    "subscription_activated": "Payment Successful",
    "payment_failed": "Payment Failed",
    "payment_recovered": "Payment Received",
    "subscription_canceled": "Subscription Canceled",
    "trial_will_end": "Your Trial Ends Soon",
}


class Notifier(ABC):

    @abstractmethod
    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    """Hands notifications to the log stream for an external sender to pick up"""

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        title = NOTIFICATION_TITLES.get(kind, kind)
        logger.info(f"Notification for user {user_id}: {title} ({kind}) {payload}")


class InMemoryNotifier(Notifier):

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, kind, payload))
