"""
Operator notification service using Apprise for multi-platform notifications.
"""
import logging
import time
from typing import Optional

import apprise

logger = logging.getLogger(__name__)


class NotificationManager:
    """Manages operator notifications via Apprise."""

    def __init__(self, urls: str = "", cooldown: int = 300):
        self.apprise = apprise.Apprise()
        self.cooldown = cooldown
        self._last_sent: dict[str, float] = {}
        self.sent = 0
        self.failed = 0
        self.reload_urls(urls)

    def reload_urls(self, urls: str):
        """Reload notification URLs from a comma separated list."""
        self.apprise.clear()
        for url in urls.split(","):
            url = url.strip()
            if url:
                self.apprise.add(url)

    def can_notify(self, key: str, cooldown: Optional[int] = None) -> bool:
        """Check if notification can be sent (respects cooldown)."""
        if cooldown is None:
            cooldown = self.cooldown

        last_sent = self._last_sent.get(key, 0)
        return (time.time() - last_sent) > cooldown

    async def send(
        self,
        title: str,
        body: str,
        notify_type: str = "info",
        key: Optional[str] = None,
        cooldown: Optional[int] = None,
    ) -> bool:
        """Send a notification to every configured server."""
        if not self.apprise.servers:
            return False

        cooldown_key = key or f"{notify_type}:{title}"
        if not self.can_notify(cooldown_key, cooldown):
            return False

        try:
            apprise_type = apprise.NotifyType.INFO
            if notify_type == "warning":
                apprise_type = apprise.NotifyType.WARNING
            elif notify_type == "emergency":
                apprise_type = apprise.NotifyType.FAILURE

            result = await self.apprise.async_notify(title=title, body=body, notify_type=apprise_type)

            if result:
                self._last_sent[cooldown_key] = time.time()
                self.sent += 1
                logger.info(f"Notification sent: {title}")
            else:
                self.failed += 1
            return result
        except Exception as e:
            self.failed += 1
            logger.error(f"Notification error: {e}")
            return False

    @property
    def server_count(self) -> int:
        """Get number of configured notification servers."""
        return len(self.apprise.servers)

    def get_stats(self) -> dict:
        return {
            "servers": self.server_count,
            "sent": self.sent,
            "failed": self.failed,
        }
