"""
Operator alerts via Telegram / Discord.

Every alert is logged. Delivery failures are logged and never propagate
into the trading path that raised the alert.
"""

import asyncio
import logging
from typing import Callable, Optional

import httpx

from config import AlertConfig

logger = logging.getLogger(__name__)


class AlertNotifier:
    """Fan-out of alert messages to the configured channels."""

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        on_alert: Optional[Callable[[str, str], None]] = None,
    ):
        self.config = config or AlertConfig()
        self.on_alert = on_alert
        self.sent_count = 0

    @property
    def channels(self) -> list[str]:
        channels = []
        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            channels.append("telegram")
        if self.config.discord_webhook_url:
            channels.append("discord")
        return channels

    async def send(self, title: str, message: str, level: int = logging.WARNING):
        """Send alert via configured channels (non-blocking)"""
        full_message = f"[{title}] {message}"
        logger.log(level, f"ALERT: {full_message}")
        self.sent_count += 1

        if self.on_alert:
            self.on_alert(title, message)

        tasks = []
        if "telegram" in self.channels:
            tasks.append(self._send_telegram(full_message))
        if "discord" in self.channels:
            tasks.append(self._send_discord(full_message))

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_telegram(self, message: str):
        try:
            url = f"https://api.telegram.org/bot{self.config.telegram_bot_token}/sendMessage"
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json={
                    "chat_id": self.config.telegram_chat_id,
                    "text": message,
                    "disable_web_page_preview": True,
                }, timeout=self.config.timeout_sec)
                if response.status_code != 200:
                    logger.warning(f"Telegram API returned {response.status_code}: {response.text}")
        except httpx.HTTPError as e:
            logger.error(f"Telegram alert failed: {e}")

    async def _send_discord(self, message: str):
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.config.discord_webhook_url, json={
                    "content": message,
                }, timeout=self.config.timeout_sec)
                if response.status_code >= 400:
                    logger.warning(f"Discord webhook returned {response.status_code}: {response.text}")
        except httpx.HTTPError as e:
            logger.error(f"Discord alert failed: {e}")
