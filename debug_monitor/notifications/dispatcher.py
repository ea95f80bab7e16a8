"""Fan-out of notifications to registered sinks."""

from __future__ import annotations

from collections.abc import Iterable

import httpx
import structlog

from ..alerts.rules import AlertChannel
from ..dashboard import Dashboard
from ..models import Notification
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
)


logger = structlog.get_logger(__name__)


def build_sink(
    channel: AlertChannel,
    dashboard: Dashboard | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> NotificationSink | None:
    """Create a sink for a channel definition. Returns None when it is not configured."""
    cfg = channel.config
    if channel.type == "console":
        return ConsoleSink()
    if channel.type == "dashboard":
        return DashboardSink(dashboard) if dashboard is not None else None
    if channel.type == "file":
        return FileSink(cfg.get("path", "logs/alerts.jsonl"))
    if channel.type == "webhook":
        return WebhookSink(cfg["url"], client=http_client) if cfg.get("url") else None
    if channel.type == "slack":
        return SlackSink(cfg["url"], client=http_client) if cfg.get("url") else None
    if channel.type == "telegram":
        if not (cfg.get("bot_token") and cfg.get("chat_id")):
            return None
        return TelegramSink(TelegramConfig(cfg["bot_token"], str(cfg["chat_id"])), client=http_client)
    if channel.type == "email":
        if not cfg.get("recipients"):
            return None
        return EmailSink(
            recipients=cfg["recipients"],
            smtp_host=cfg.get("smtp_host", "localhost"),
            smtp_port=int(cfg.get("smtp_port", 25)),
            sender=cfg.get("sender", "debug-monitor@localhost"),
            username=cfg.get("username"),
            password=cfg.get("password"),
            use_tls=bool(cfg.get("use_tls", False)),
        )
    return None


class NotificationDispatcher:
    """
    Delivers notifications to named channels.

    Delivery is fire-and-forget from the caller's point of view: unknown
    channels and sink failures are logged, never raised.
    """

    def __init__(self):
        self.sinks: dict[str, NotificationSink] = {}
        self.delivered = 0
        self.failed = 0

    def register(self, channel_id: str, sink: NotificationSink) -> None:
        self.sinks[channel_id] = sink

    def unregister(self, channel_id: str) -> bool:
        return self.sinks.pop(channel_id, None) is not None

    def has_channel(self, channel_id: str) -> bool:
        return channel_id in self.sinks

    def channel_ids(self) -> list[str]:
        return list(self.sinks)

    async def dispatch(self, notification: Notification, channels: Iterable[str] | None = None) -> int:
        targets = list(channels) if channels is not None else list(self.sinks)
        delivered = 0
        for channel_id in targets:
            sink = self.sinks.get(channel_id)
            if sink is None:
                logger.warning("Notification channel not registered", channel=channel_id)
                continue
            try:
                await sink.send(notification)
                delivered += 1
            except Exception as e:
                self.failed += 1
                logger.error("Notification delivery failed", channel=channel_id, error=str(e))
        self.delivered += delivered
        return delivered
