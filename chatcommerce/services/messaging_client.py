from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from chatcommerce.logging_config import get_logger

logger = get_logger("messaging_client")


class MessagingError(Exception):
    """Provider rejected or failed an outbound send."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class MessagingClient(ABC):
    """Outbound side of the messaging provider."""

    @abstractmethod
    def send(self, customer_id: str, message: dict[str, Any]) -> Optional[str]:
        """Send one message. Returns the provider message id when known."""


class WhatsAppCloudClient(MessagingClient):
    """WhatsApp Cloud API sender over httpx."""

    def __init__(
        self,
        api_url: str,
        phone_number_id: Optional[str],
        access_token: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def send(self, customer_id: str, message: dict[str, Any]) -> Optional[str]:
        if not self.phone_number_id or not self.access_token:
            raise MessagingError("WhatsApp credentials are not configured")

        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": customer_id.lstrip("+"),
            **message,
        }
        url = f"{self.api_url}/{self.phone_number_id}/messages"

        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = client.post(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                json=body,
            )

        if response.status_code >= 300:
            logger.warning(
                "WhatsApp send rejected",
                extra={
                    "context": {
                        "customer_id": customer_id,
                        "status_code": response.status_code,
                        "body": response.text[:300],
                    }
                },
            )
            raise MessagingError(f"WhatsApp API error: {response.status_code}", status_code=response.status_code)

        data = response.json() if response.content else {}
        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"customer_id": customer_id, "message_id": message_id, "type": message.get("type")}},
        )
        return message_id
