"""
Tests for gateway webhook parsing.
"""

from datetime import datetime, timezone

import pytest

from wa_integration.contracts.event_types import normalize_event_name
from wa_integration.contracts.payloads import MessageType
from wa_integration.gateway.webhook import (
    extract_account_key,
    extract_inbound_messages,
    extract_status_updates,
    parse_webhook_event,
)


@pytest.fixture
def text_message_webhook():
    """Sample messages.upsert webhook for a text message."""
    return {
        "event": "messages.upsert",
        "instance": "acme_1",
        "data": {
            "key": {
                "id": "msg_123",
                "remoteJid": "5511888888888@s.whatsapp.net",
                "fromMe": False,
            },
            "pushName": "Maria",
            "message": {"conversation": "Hola, ¿tienen stock?"},
            "messageType": "conversation",
            "messageTimestamp": 1704067200,
        },
    }


@pytest.fixture
def status_webhook():
    """Sample messages.update webhook."""
    return {
        "event": "messages.update",
        "instance": "acme_1",
        "data": {
            "key": {"id": "msg_sent", "remoteJid": "5511888888888@s.whatsapp.net"},
            "update": {"status": "READ"},
        },
    }


class TestEventNames:
    def test_normalize_dotted(self):
        assert normalize_event_name("messages.upsert") == "messages.upsert"

    def test_normalize_per_event_url_style(self):
        assert normalize_event_name("MESSAGES_UPSERT") == "messages.upsert"
        assert normalize_event_name("CONNECTION_UPDATE") == "connection.update"

    def test_normalize_empty(self):
        assert normalize_event_name(None) == ""


class TestParseWebhookEvent:
    def test_parse(self, text_message_webhook):
        event = parse_webhook_event(text_message_webhook)
        assert event.event == "messages.upsert"
        assert event.instance == "acme_1"

    def test_nested_instance_name(self):
        assert extract_account_key({"instance": {"instanceName": "acme_2"}}) == "acme_2"
        assert extract_account_key({"event": "x"}) is None

    def test_extra_fields_allowed(self, text_message_webhook):
        event = parse_webhook_event({**text_message_webhook, "destination": "https://x"})
        assert event.event == "messages.upsert"


class TestInboundMessages:
    """Tests for messages.upsert extraction."""

    def test_text_message(self, text_message_webhook):
        messages = extract_inbound_messages(parse_webhook_event(text_message_webhook))

        assert len(messages) == 1
        message = messages[0]
        assert message.provider_message_id == "msg_123"
        assert message.remote_address == "5511888888888"
        assert message.push_name == "Maria"
        assert message.message_type == MessageType.TEXT
        assert message.text == "Hola, ¿tienen stock?"
        assert message.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_extended_text(self, text_message_webhook):
        text_message_webhook["data"]["message"] = {"extendedTextMessage": {"text": "Link https://x"}}
        messages = extract_inbound_messages(parse_webhook_event(text_message_webhook))
        assert messages[0].text == "Link https://x"

    def test_image_with_caption(self, text_message_webhook):
        text_message_webhook["data"]["message"] = {
            "imageMessage": {"caption": "Foto del pedido", "mimetype": "image/jpeg", "url": "https://cdn/x"}
        }
        message = extract_inbound_messages(parse_webhook_event(text_message_webhook))[0]

        assert message.message_type == MessageType.IMAGE
        assert message.text == "Foto del pedido"
        assert message.media["mimetype"] == "image/jpeg"

    def test_audio_placeholder(self, text_message_webhook):
        text_message_webhook["data"]["message"] = {"audioMessage": {"seconds": 4, "ptt": True}}
        message = extract_inbound_messages(parse_webhook_event(text_message_webhook))[0]

        assert message.message_type == MessageType.AUDIO
        assert message.text == "[Audio]"

    def test_own_messages_skipped(self, text_message_webhook):
        text_message_webhook["data"]["key"]["fromMe"] = True
        assert extract_inbound_messages(parse_webhook_event(text_message_webhook)) == []

    def test_group_messages_skipped(self, text_message_webhook):
        text_message_webhook["data"]["key"]["remoteJid"] = "120363025246125486@g.us"
        assert extract_inbound_messages(parse_webhook_event(text_message_webhook)) == []

    def test_list_of_messages(self, text_message_webhook):
        first = text_message_webhook["data"]
        second = {**first, "key": {**first["key"], "id": "msg_124"}}
        text_message_webhook["data"] = {"messages": [first, second]}

        messages = extract_inbound_messages(parse_webhook_event(text_message_webhook))
        assert [m.provider_message_id for m in messages] == ["msg_123", "msg_124"]

    def test_other_events_yield_nothing(self, status_webhook):
        assert extract_inbound_messages(parse_webhook_event(status_webhook)) == []


class TestStatusUpdates:
    """Tests for messages.update extraction."""

    def test_read_status(self, status_webhook):
        updates = extract_status_updates(parse_webhook_event(status_webhook))

        assert len(updates) == 1
        assert updates[0].provider_message_id == "msg_sent"
        assert updates[0].status == "read"
        assert updates[0].remote_address == "5511888888888"

    @pytest.mark.parametrize(
        "raw_status,expected",
        [("SERVER_ACK", "sent"), ("DELIVERY_ACK", "delivered"), ("ERROR", "failed"), (3, "delivered")],
    )
    def test_status_mapping(self, status_webhook, raw_status, expected):
        status_webhook["data"]["update"]["status"] = raw_status
        assert extract_status_updates(parse_webhook_event(status_webhook))[0].status == expected

    def test_flat_v2_shape(self):
        payload = {
            "event": "messages.update",
            "instance": "acme_1",
            "data": {"keyId": "msg_9", "remoteJid": "5511888888888@s.whatsapp.net", "status": "DELIVERY_ACK"},
        }
        updates = extract_status_updates(parse_webhook_event(payload))
        assert updates[0].provider_message_id == "msg_9"
        assert updates[0].status == "delivered"

    def test_unknown_status_skipped(self, status_webhook):
        status_webhook["data"]["update"]["status"] = "SOMETHING"
        assert extract_status_updates(parse_webhook_event(status_webhook)) == []
