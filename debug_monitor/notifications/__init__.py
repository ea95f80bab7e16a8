from .dispatcher import NotificationDispatcher, build_sink
from .sinks import (
    ConsoleSink,
    DashboardSink,
    EmailSink,
    FileSink,
    NotificationSink,
    SlackSink,
    TelegramConfig,
    TelegramSink,
    WebhookSink,
    split_message,
)

__all__ = [
    "NotificationDispatcher",
    "build_sink",
    "ConsoleSink",
    "DashboardSink",
    "EmailSink",
    "FileSink",
    "NotificationSink",
    "SlackSink",
    "TelegramConfig",
    "TelegramSink",
    "WebhookSink",
    "split_message",
]
