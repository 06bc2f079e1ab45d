from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from movieauth.logging import get_logger
from movieauth.storage.models import User

logger = get_logger(__name__)

USER_REGISTERED = "user_registered"
USER_LOGGED_IN = "user_logged_in"
PASSWORD_RESET_REQUESTED = "password_reset_requested"


class EventPublisher:
    """Best-effort user lifecycle notifications for downstream services.

    Events are POSTed as JSON to a webhook. Publishing never raises: a missing
    URL, a timeout or a non-2xx answer is logged and the caller carries on.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    @property
    def is_enabled(self) -> bool:
        return bool(self.webhook_url)

    async def publish(self, event_type: str, user: User, data: Optional[Dict[str, Any]] = None) -> bool:
        if not self.webhook_url:
            logger.debug("event_publish_skipped", event_type=event_type, user_id=user.id)
            return False
        message = {
            "event_type": event_type,
            "user_id": user.id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {"username": user.username, "role": user.role.value, **(data or {})},
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.webhook_url, json=message)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "event_publish_http_error",
                event_type=event_type,
                user_id=user.id,
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.warning(
                "event_publish_failed",
                event_type=event_type,
                user_id=user.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("event_published", event_type=event_type, user_id=user.id)
        return True

    async def user_registered(self, user: User) -> bool:
        return await self.publish(USER_REGISTERED, user)

    async def user_logged_in(self, user: User, *, ip: Optional[str], user_agent: Optional[str]) -> bool:
        return await self.publish(
            USER_LOGGED_IN, user, {"ip_address": ip, "user_agent": user_agent}
        )

    async def password_reset_requested(self, user: User) -> bool:
        return await self.publish(PASSWORD_RESET_REQUESTED, user)
