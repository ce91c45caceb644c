from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatcommerce.logging_config import get_logger
from chatcommerce.services.conversation_service import InvalidCustomerId, normalize_customer_id
from chatcommerce.services.idempotency_service import build_event_key

logger = get_logger("schemas.webhook")


class TextContent(BaseModel):
    body: str = ""


class ReplyRef(BaseModel):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None


class InteractiveContent(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[ReplyRef] = None
    list_reply: Optional[ReplyRef] = None


class QuickReplyButton(BaseModel):
    payload: Optional[str] = None
    text: Optional[str] = None


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[TextContent] = None
    interactive: Optional[InteractiveContent] = None
    button: Optional[QuickReplyButton] = None

    def reply_id(self) -> Optional[str]:
        if self.interactive is not None:
            reply = self.interactive.button_reply or self.interactive.list_reply
            if reply is not None:
                return reply.id
        if self.button is not None and self.button.payload:
            return self.button.payload
        return None

    def body_text(self) -> Optional[str]:
        if self.text is not None:
            return self.text.body
        if self.interactive is not None:
            reply = self.interactive.button_reply or self.interactive.list_reply
            if reply is not None:
                return reply.title
        if self.button is not None:
            return self.button.text
        return None

    def timestamp_int(self) -> Optional[int]:
        try:
            return int(self.timestamp) if self.timestamp else None
        except ValueError:
            return None


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class Change(BaseModel):
    field: str = "messages"
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(BaseModel):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """WhatsApp Cloud API webhook notification."""

    object: Optional[str] = None
    entry: list[Entry] = Field(default_factory=list)

    def inbound_events(self) -> list["InboundEvent"]:
        events = []
        received_at = datetime.now(timezone.utc)
        for entry in self.entry:
            for change in entry.changes:
                for message in change.value.messages:
                    event = InboundEvent.from_message(message, received_at)
                    if event is not None:
                        events.append(event)
        return events

    def status_count(self) -> int:
        return sum(len(change.value.statuses) for entry in self.entry for change in entry.changes)


@dataclass
class InboundEvent:
    event_id: str
    customer_id: str
    payload: dict[str, Any]
    received_at: datetime
    message_type: str = "text"
    text: Optional[str] = None
    reply_id: Optional[str] = None
    timestamp: Optional[int] = None

    @classmethod
    def from_message(cls, message: InboundMessage, received_at: datetime) -> Optional["InboundEvent"]:
        try:
            customer_id = normalize_customer_id(message.from_)
        except InvalidCustomerId:
            logger.warning("Inbound message without a usable sender", extra={"context": {"message_id": message.id}})
            return None

        text = message.body_text()
        timestamp = message.timestamp_int()
        event_id = build_event_key(message.id, customer_id, timestamp, text)
        if event_id is None:
            logger.warning("Inbound message without an idempotency key", extra={"context": {"customer_id": customer_id}})
            return None

        return cls(
            event_id=event_id,
            customer_id=customer_id,
            payload=message.model_dump(by_alias=True, exclude_none=True),
            received_at=received_at,
            message_type=message.type,
            text=text,
            reply_id=message.reply_id(),
            timestamp=timestamp,
        )


class WebhookAck(BaseModel):
    status: str = "ok"
    accepted: int = 0
    duplicates: int = 0
    ignored: int = 0
