from __future__ import annotations

import requests
from loguru import logger

from db import NotificationRepository, SettingsRepository


class NotificationService:
    """Deliver reminder messages to the inbox table and an optional webhook."""

    def __init__(
        self,
        repo: NotificationRepository,
        settings: SettingsRepository | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.timeout = timeout

    def _webhook_url(self) -> str:
        if self.settings is None:
            return ""
        return self.settings.get_text("webhook_url", "")

    def notify(self, message: str) -> int:
        """Record ``message`` and forward it to the webhook if one is set.

        Delivery is fire-and-forget: webhook errors are logged, never raised.
        """
        nid = self.repo.add(message)
        logger.info("Notification {}: {}", nid, message)
        url = self._webhook_url()
        if url:
            try:
                resp = requests.post(url, json={"text": message}, timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as e:
                logger.warning("Webhook delivery failed: {}", e)
        return nid

    def fetch_all(self, unread_only: bool = False) -> list[dict[str, object]]:
        return self.repo.fetch_all(unread_only)

    def mark_read(self, nid: int) -> None:
        self.repo.mark_read(nid)

    def unread_count(self) -> int:
        return self.repo.unread_count()
