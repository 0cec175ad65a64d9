"""HTTP push bridge used to tell the booking user about call outcomes."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agents.errors import NotificationError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


class NotificationGateway:
    """Posts ``{user_id, title, body, data}`` to the configured push endpoint."""

    def __init__(self, endpoint: str | None = None, api_key: str | None = None) -> None:
        settings = get_settings()
        endpoint = endpoint or settings.notification_endpoint
        self._endpoint = endpoint.rstrip("/") if endpoint else None
        self._api_key = api_key or settings.notification_api_key

    async def send(self, user_id: str, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        if not self._endpoint:
            LOGGER.warning("Notification endpoint not configured; dropping %r for user %s", title, user_id)
            return

        payload: dict[str, Any] = {
            "user_id": user_id,
            "title": title,
            "body": body,
            "data": data or {},
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(timeout=30) as client:
                response = await client.post(self._endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.error("Notification delivery failed: %s", exc)
            raise NotificationError(f"Notification delivery failed: {exc}") from exc
