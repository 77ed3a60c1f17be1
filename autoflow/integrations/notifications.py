"""Notifier implementations."""

import logging
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger, log_with_context
from .base import Notifier

logger = get_logger(__name__)


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, target: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.sent.append({"target": target, "message": message, "details": details or {}})
        log_with_context(logger, logging.INFO, f"Notification for {target}: {message}",
                         notification_target=target, **(details or {}))
