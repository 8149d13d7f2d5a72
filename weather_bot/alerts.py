"""Operator alerts: executions, breaker trips, lifecycle events.

Delivery failures are logged and dropped; an alert never blocks trading.
"""

from __future__ import annotations

import asyncio
import html
import logging
from abc import ABC, abstractmethod
from typing import Iterable

import httpx

from weather_bot.config import AlertSettings

LOGGER = logging.getLogger(__name__)


class AlertSink(ABC):
    @abstractmethod
    async def send(self, title: str, body: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LogAlertSink(AlertSink):
    async def send(self, title: str, body: str) -> None:
        LOGGER.info("ALERT %s: %s", title, body)


class TelegramAlertSink(AlertSink):
    def __init__(
        self,
        settings: AlertSettings,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.telegram_bot_token or not settings.telegram_chat_id:
            raise ValueError("telegram alerts need TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID")
        self._chat_id = settings.telegram_chat_id
        self._client = httpx.AsyncClient(
            base_url=f"{settings.telegram_base_url.rstrip('/')}/bot{settings.telegram_bot_token}",
            timeout=timeout_seconds,
            transport=transport,
        )

    async def send(self, title: str, body: str) -> None:
        response = await self._client.post(
            "/sendMessage",
            json={
                "chat_id": self._chat_id,
                "text": f"<b>{html.escape(title)}</b>\n{html.escape(body)}",
                "parse_mode": "HTML",
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class AlertDispatcher:
    """Fans each alert out to every sink."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self._sinks = list(sinks)
        self._pending: set[asyncio.Task[None]] = set()

    async def send(self, title: str, body: str) -> None:
        for sink in self._sinks:
            try:
                await sink.send(title, body)
            except Exception as exc:
                LOGGER.warning("alert delivery via %s failed: %s", type(sink).__name__, exc)

    def post(self, title: str, body: str) -> None:
        """Fire-and-forget variant for synchronous callers inside the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.info("ALERT %s: %s", title, body)
            return
        task = loop.create_task(self.send(title, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        for sink in self._sinks:
            await sink.aclose()


def build_dispatcher(settings: AlertSettings, timeout_seconds: float = 10.0) -> AlertDispatcher:
    sinks: list[AlertSink] = [LogAlertSink()]
    if settings.telegram_bot_token and settings.telegram_chat_id:
        sinks.append(TelegramAlertSink(settings, timeout_seconds=timeout_seconds))
    return AlertDispatcher(sinks)
