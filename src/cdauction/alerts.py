"""Alerts — Telegram notifier for periodic-task failures.

Implements:
- sendMessage via the Telegram Bot API (aiohttp)
- Alert dedup per key within ALERT_DEDUP_SEC
- Disabled mode without a bot token: alerts are logged only
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import aiohttp

from cdauction.constants import ALERT_DEDUP_SEC

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
SEND_TIMEOUT_SEC = 10


class TelegramNotifier:
    """Posts alerts to a single operator chat."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._bot_token = bot_token or os.environ.get("TELEGRAM_BOT_TOKEN", "")
        self._chat_id = chat_id or os.environ.get("TELEGRAM_CHAT_ID", "")
        self._enabled = bool(self._bot_token and self._chat_id and self._bot_token != "REPLACE_ME")
        self._session = session
        self._time = time_fn
        self._recent_alerts = {}  # type: Dict[str, float]
        self.sent = 0
        self.deduped = 0

        if self._enabled:
            logger.info("Telegram notifier initialised")
        else:
            logger.info("Telegram notifier disabled (no bot token or chat id)")

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _post(self, message: str) -> bool:
        url = "{}/bot{}/sendMessage".format(TELEGRAM_API_BASE, self._bot_token)
        body = {"chat_id": self._chat_id, "text": message}  # type: Dict[str, Any]
        timeout = aiohttp.ClientTimeout(total=SEND_TIMEOUT_SEC)
        try:
            if self._session is not None:
                async with self._session.post(url, json=body, timeout=timeout) as resp:
                    resp.raise_for_status()
            else:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.post(url, json=body) as resp:
                        resp.raise_for_status()
        except aiohttp.ClientError as e:
            logger.error("Telegram alert failed: %s", e)
            return False
        return True

    async def send_alert(self, message: str, dedup_key: Optional[str] = None) -> bool:
        """Send alert with optional dedup.

        Returns True if the alert was delivered (or logged, when disabled).
        """
        if dedup_key:
            now = self._time()
            last_sent = self._recent_alerts.get(dedup_key)
            if last_sent is not None and now - last_sent < ALERT_DEDUP_SEC:
                self.deduped += 1
                return False
            self._recent_alerts[dedup_key] = now

        if not self._enabled:
            logger.info("ALERT (telegram disabled): %s", message)
            return True

        logger.info("ALERT: %s", message)
        delivered = await self._post(message)
        if delivered:
            self.sent += 1
        return delivered
