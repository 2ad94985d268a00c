"""
Outbound transport: hands text messages to the WhatsApp Cloud API and returns
the provider-assigned message id.

The aiohttp session is owned by the application lifespan and injected here;
its ClientTimeout bounds every dispatch.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

import aiohttp

from courier.errors import TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_text(self, phone_number: str, body: str) -> Optional[str]:
        """Dispatch `body` to `phone_number`; return the provider message id if one was assigned."""
        ...


class WhatsAppTransport:
    """WhatsApp Cloud API client for plain text messages."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str,
        base_url: str,
    ):
        self.session = session
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def build_text_payload(phone_number: str, body: str) -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone_number,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }

    async def send_text(self, phone_number: str, body: str) -> Optional[str]:
        """
        Send a text message.

        Returns:
            The provider message id, or None when the response carried none.

        Raises:
            TransportError: the transport is not configured, the request
                failed or timed out, or the API answered with an error status.
        """
        if not self.access_token or not self.phone_number_id:
            raise TransportError("WhatsApp transport is not configured")

        payload = self.build_text_payload(phone_number, body)
        logger.debug(f"Sending text message to {phone_number} via {self.messages_url}")

        try:
            async with self.session.post(
                self.messages_url, headers=self._get_headers(), json=payload
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"WhatsApp API error {response.status}: {error_text}")
                    raise TransportError(f"WhatsApp API responded with {response.status}")
                response_data = await response.json()
        except asyncio.TimeoutError:
            logger.error(f"WhatsApp API request to {phone_number} timed out")
            raise TransportError("WhatsApp API request timed out")
        except aiohttp.ClientError as err:
            logger.error(f"WhatsApp API request to {phone_number} failed: {err}")
            raise TransportError(f"WhatsApp API request failed: {err}")

        messages = response_data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(f"WhatsApp accepted message for {phone_number}: id={message_id}")
        return message_id
