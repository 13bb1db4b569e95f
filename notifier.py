"""Fire-and-forget notification side channel.

The HTTP boundary emits one event per outcome (book borrowed, fine paid, ...) after the
response has been produced. Sinks must never influence the primary response, so
:func:`dispatch` logs and drops any sink failure.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from config import Settings

logger = logging.getLogger(__name__)
events_logger = logging.getLogger("library.notifications")


@dataclass(frozen=True)
class NotificationEvent:
    title: str
    message: str
    icon: Optional[str] = None
    sound: bool = False


class Notifier(ABC):
    """Sink interface."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default sink: writes each event to the ``library.notifications`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def notify(self, event: NotificationEvent) -> None:
        events_logger.log(
            self.level, "[%s] %s%s", event.title, event.message, " (sound)" if event.sound else ""
        )


class NullNotifier(Notifier):
    def notify(self, event: NotificationEvent) -> None:
        return None


def build_notifier(settings: Settings) -> Notifier:
    if not settings.enable_notifications:
        return NullNotifier()
    return LoggingNotifier()


def make_event(settings: Settings, title: str, message: str) -> NotificationEvent:
    return NotificationEvent(
        title=title,
        message=message,
        icon=settings.notification_icon,
        sound=settings.notification_sound,
    )


def dispatch(notifier: Notifier, event: NotificationEvent) -> None:
    """Deliver one event; sink failures are logged and swallowed."""
    try:
        notifier.notify(event)
    except Exception as e:
        logger.warning(f"Notification sink failed for '{event.title}': {e}")
