"""
PulseCheck - Messaging Adapter (Slack)
The scheduler's only outbound channel. Injected, never global.

The adapter handles:
  - Posting a reminder to a user, optionally threaded under the survey message
  - Resolving a user id to a display name
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from pulsecheck.config import SLACK_BOT_TOKEN, SLACK_BASE_URL, HTTP_TIMEOUT_SECONDS
from pulsecheck.models import MessagingError

logger = logging.getLogger(__name__)


class MessagingProvider(ABC):
    """Abstract interface for the chat platform."""

    @abstractmethod
    async def send_message(
        self,
        recipient_id: str,
        text: str,
        thread_ts: Optional[str] = None,
    ) -> dict:
        """Send a message. Raises MessagingError on failure."""
        ...

    @abstractmethod
    async def resolve_display_name(self, user_id: str) -> str:
        """Return the user's display name. Raises MessagingError on failure."""
        ...

    async def close(self) -> None:
        pass


class SlackAdapter(MessagingProvider):
    """Slack Web API integration."""

    def __init__(
        self,
        token: str = SLACK_BOT_TOKEN,
        base_url: str = SLACK_BASE_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, api_method: str, **kwargs) -> dict:
        """Make authenticated request to the Slack Web API."""
        url = f"{self.base_url}/{api_method}"
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self.client.request(method, url, headers=headers, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Slack API error ({api_method}): {e}")
            raise MessagingError(str(e)) from e

        # Slack reports most failures as 200 with ok=false
        if not data.get("ok"):
            raise MessagingError(f"{api_method} failed: {data.get('error', 'unknown_error')}")
        return data

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        thread_ts: Optional[str] = None,
    ) -> dict:
        """Post to a DM or channel. Posting to a user id opens the bot DM."""
        payload = {"channel": recipient_id, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        data = await self._request("POST", "chat.postMessage", json=payload)
        return {"channel": data.get("channel"), "ts": data.get("ts")}

    async def resolve_display_name(self, user_id: str) -> str:
        data = await self._request("GET", "users.info", params={"user": user_id})
        user = data.get("user", {})
        profile = user.get("profile", {})
        name = profile.get("real_name") or user.get("real_name") or user.get("name")
        if not name:
            raise MessagingError(f"users.info returned no name for {user_id}")
        return name

    async def close(self) -> None:
        await self.client.aclose()


def get_messenger() -> MessagingProvider:
    """Factory: return the configured messaging provider."""
    return SlackAdapter()
