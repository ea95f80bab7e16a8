"""Notification sinks: console, dashboard, file, webhook, slack, telegram and email."""

from __future__ import annotations

import asyncio
import json
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from ..dashboard import Dashboard
from ..models import Notification, Severity


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...


class ConsoleSink:
    """Writes notifications to the structured log, at a level matching severity."""

    async def send(self, notification: Notification) -> None:
        fields = {
            "severity": notification.severity.value,
            "title": notification.title,
            "context": notification.context,
            "recovery_actions": list(notification.recovery_actions),
        }
        if notification.severity in (Severity.CRITICAL, Severity.HIGH):
            logger.error(notification.message, **fields)
        elif notification.severity == Severity.MEDIUM:
            logger.warning(notification.message, **fields)
        else:
            logger.info(notification.message, **fields)


class DashboardSink:
    def __init__(self, dashboard: Dashboard):
        self.dashboard = dashboard

    async def send(self, notification: Notification) -> None:
        self.dashboard.push_notification(notification)


class FileSink:
    """Appends notifications as JSON lines."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def send(self, notification: Notification) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(notification.to_dict(), default=str)
        await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line + "\n")


class WebhookSink:
    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.url = url
        self.client = client
        self.timeout = timeout

    def payload(self, notification: Notification) -> dict[str, Any]:
        return notification.to_dict()

    async def send(self, notification: Notification) -> None:
        payload = self.payload(notification)
        if self.client is not None:
            resp = await self.client.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return
        async with httpx.AsyncClient() as client:
            resp = await client.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()


class SlackSink(WebhookSink):
    """Slack incoming-webhook sink."""

    def payload(self, notification: Notification) -> dict[str, Any]:
        return {"text": notification.render_text()}


def split_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


class TelegramSink:
    def __init__(self, config: TelegramConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client

    async def _post(self, client: httpx.AsyncClient, text: str) -> None:
        url = f"https://api.telegram.org/bot{self.config.bot_token}/sendMessage"
        try:
            resp = await client.post(url, json={"chat_id": self.config.chat_id, "text": text}, timeout=15.0)
            data = resp.json()
        except Exception as e:
            # keep the bot token out of logs and tracebacks
            msg = f"{type(e).__name__}: {e}".replace(self.config.bot_token, "<redacted>")
            raise RuntimeError(msg) from None
        if not data.get("ok"):
            raise RuntimeError(f"Telegram rejected message: {data.get('description', 'unknown error')}")

    async def send(self, notification: Notification) -> None:
        parts = split_message(notification.render_text())
        if self.client is not None:
            for part in parts:
                await self._post(self.client, part)
            return
        async with httpx.AsyncClient() as client:
            for part in parts:
                await self._post(client, part)


class EmailSink:
    """SMTP sink; the blocking smtplib call runs in a worker thread."""

    def __init__(
        self,
        recipients: list[str],
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        sender: str = "debug-monitor@localhost",
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
    ):
        self.recipients = list(recipients)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, notification: Notification) -> MIMEText:
        msg = MIMEText(notification.render_text())
        msg["Subject"] = f"[{notification.severity.value.upper()}] {notification.title or notification.message}"
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        return msg

    def _send_sync(self, msg: MIMEText) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, notification: Notification) -> None:
        if not self.recipients:
            return
        await asyncio.to_thread(self._send_sync, self.build_message(notification))
