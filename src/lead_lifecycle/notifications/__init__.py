"""Communication dispatch behind the channel policy."""

from .dispatcher import NotificationDispatcher, LoggingDispatcher, CommunicationService, SendResult

__all__ = [
    "NotificationDispatcher",
    "LoggingDispatcher",
    "CommunicationService",
    "SendResult",
]
