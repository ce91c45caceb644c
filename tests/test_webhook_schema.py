from datetime import datetime, timezone

from chatcommerce.schemas.webhook import InboundEvent, InboundMessage, WebhookPayload


def payload(*messages, statuses=()):
    return WebhookPayload.model_validate(
        {
            "object": "whatsapp_business_account",
            "entry": [{"id": "1", "changes": [{"value": {"messages": list(messages), "statuses": list(statuses)}}]}],
        }
    )


class TestInboundEvents:
    def test_text_message(self):
        events = payload({"id": "wamid.1", "from": "15551234567", "type": "text", "text": {"body": "hi"}}).inbound_events()

        assert len(events) == 1
        event = events[0]
        assert event.event_id == "wamid.1"
        assert event.customer_id == "+15551234567"
        assert event.text == "hi"
        assert event.reply_id is None

    def test_button_reply(self):
        message = {
            "id": "wamid.2",
            "from": "15551234567",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "category_12", "title": "Shoes"}},
        }
        event = payload(message).inbound_events()[0]
        assert event.reply_id == "category_12"
        assert event.text == "Shoes"
        assert event.message_type == "interactive"

    def test_list_reply(self):
        message = {
            "id": "wamid.3",
            "from": "15551234567",
            "type": "interactive",
            "interactive": {"type": "list_reply", "list_reply": {"id": "product_5", "title": "Runner"}},
        }
        assert payload(message).inbound_events()[0].reply_id == "product_5"

    def test_template_quick_reply(self):
        message = {"id": "wamid.4", "from": "15551234567", "type": "button", "button": {"payload": "cart", "text": "Cart"}}
        assert payload(message).inbound_events()[0].reply_id == "cart"

    def test_missing_id_uses_timestamp_key(self):
        message = {"from": "15551234567", "timestamp": "1772452800", "text": {"body": "hi"}}
        assert payload(message).inbound_events()[0].event_id == "+15551234567:1772452800"

    def test_invalid_sender_dropped(self):
        assert payload({"id": "wamid.5", "from": "abc", "text": {"body": "hi"}}).inbound_events() == []

    def test_unknown_fields_tolerated(self):
        message = {"id": "wamid.6", "from": "15551234567", "type": "image", "image": {"id": "media-1"}}
        event = payload(message).inbound_events()[0]
        assert event.text is None
        assert event.payload["image"] == {"id": "media-1"}

    def test_status_count(self):
        assert payload(statuses=[{"id": "a"}, {"id": "b"}]).status_count() == 2


class TestInboundMessage:
    def test_bad_timestamp_ignored(self):
        assert InboundMessage.model_validate({"from": "1", "timestamp": "soon"}).timestamp_int() is None

    def test_from_message_keeps_payload_alias(self):
        message = InboundMessage.model_validate({"id": "x", "from": "15551234567", "text": {"body": "hi"}})
        event = InboundEvent.from_message(message, datetime.now(timezone.utc))
        assert event.payload["from"] == "15551234567"
