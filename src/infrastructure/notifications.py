"""
Fire-and-forget client for the external notification service.

Notifications are not part of any transaction: they are sent after the
state change has been committed and a failure is logged and swallowed, so
a flaky provider can never roll back a match or a cancellation.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from src.config import settings

logger = logging.getLogger(__name__)


class NotificationClient:
    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = (url if url is not None else settings.notification_url).strip()
        self.token = token if token is not None else settings.notification_token
        self.timeout = timeout or settings.notification_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        user_ids: list[int],
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
        priority: str = "high",
    ) -> bool:
        """POST one notification.  Returns ``False`` on any delivery failure."""
        recipients = [u for u in user_ids if u is not None]
        if not self.enabled or not recipients:
            logger.debug("Notification skipped (%s): %s", recipients, title)
            return False

        payload = {
            "user_ids": recipients,
            "title": title,
            "body": body,
            "data": data or {},
            "priority": priority,
        }
        try:
            client = await self._get_client()
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Notification '%s' to %s failed: %s", title, recipients, exc)
            return False
        except Exception:
            logger.exception("Notification '%s' to %s crashed", title, recipients)
            return False
        logger.info("Notification '%s' sent to %s", title, recipients)
        return True


_default_client: Optional[NotificationClient] = None


def get_notifier() -> NotificationClient:
    global _default_client
    if _default_client is None:
        _default_client = NotificationClient()
    return _default_client
