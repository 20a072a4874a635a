"""
Fire-and-forget notification sinks for user-visible status messages.

The core never depends on delivery: notify() swallows sink failures after
logging them at debug level.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    """Collaborator interface for status messages."""

    def notify(self, message: str) -> None:
        ...


class LoggingNotificationSink:
    """Sink that writes notifications to the application log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level
        self._logger = logging.getLogger("mnemosyne.notifications")

    def notify(self, message: str) -> None:
        self._logger.log(self.level, message)


def notify(sink: Optional[NotificationSink], message: str) -> None:
    """Deliver a message to a sink without letting sink failures propagate."""
    if sink is None:
        return
    try:
        sink.notify(message)
    except Exception as e:
        logger.debug(f"Notification sink failed: {e}")
