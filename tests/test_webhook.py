"""
Tests for the /webhook endpoints.

Tests cover:
- Verification handshake (challenge echo, forbidden)
- Inbound message events (directory entry, stored record, duplicates)
- Status events (forward transitions, stale and unknown callbacks, untracked ids)
- Unknown event kinds and malformed payloads
"""

import os

import pytest

from conftest import count_messages, count_users
from courier.models import Message, User
from courier.storage import SessionLocal


VERIFY_TOKEN = os.environ["WEBHOOK_VERIFY_TOKEN"]


def envelope(value: dict) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "102290129340398", "changes": [{"field": "messages", "value": value}]}],
    }


def message_payload(message_id="wamid.in.1", sender="919876543210", body="Hello", name="Asha"):
    return envelope({
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": "123"},
        "contacts": [{"profile": {"name": name}, "wa_id": sender}],
        "messages": [{
            "from": sender,
            "id": message_id,
            "timestamp": "1736935200",
            "type": "text",
            "text": {"body": body},
        }],
    })


def status_payload(message_id, status):
    return envelope({
        "messaging_product": "whatsapp",
        "statuses": [{"id": message_id, "status": status, "timestamp": "1736935260",
                      "recipient_id": "919876543210"}],
    })


def send_outbound(client, contact_no="919876543210", message="Ping"):
    response = client.post("/messages/send/number", json={"contact_no": contact_no, "message": message})
    assert response.status_code == 200
    return response.json()["message_id"]


def load_sender_copy(key):
    with SessionLocal() as session:
        return (
            session.query(Message)
            .filter(Message.idempotency_key == key, Message.is_sender.is_(True))
            .one()
        )


class TestWebhookVerification:

    def test_subscribe_with_valid_token_echoes_challenge(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": VERIFY_TOKEN,
            "hub.challenge": "1158201444",
        })

        assert response.status_code == 200
        assert response.json() == 1158201444

    def test_wrong_token_is_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "nope",
            "hub.challenge": "42",
        })
        assert response.status_code == 403

    def test_wrong_mode_is_forbidden(self, client):
        response = client.get("/webhook", params={
            "hub.mode": "unsubscribe",
            "hub.verify_token": VERIFY_TOKEN,
            "hub.challenge": "42",
        })
        assert response.status_code == 403

    def test_missing_params_is_forbidden(self, client):
        assert client.get("/webhook").status_code == 403

    @pytest.mark.parametrize("challenge", ["abc", None])
    def test_valid_token_with_unusable_challenge_is_forbidden(self, client, challenge):
        params = {"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN}
        if challenge is not None:
            params["hub.challenge"] = challenge
        response = client.get("/webhook", params=params)

        assert response.status_code == 403
        assert response.text == "Forbidden"


class TestInboundMessages:

    def test_message_creates_user_and_record(self, client):
        response = client.post("/webhook", json=message_payload())

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        with SessionLocal() as session:
            user = session.query(User).one()
            message = session.query(Message).one()

        assert user.phone_number == "919876543210"
        assert user.full_name == "Asha"
        assert user.is_temp_name is True

        assert message.idempotency_key == "wamid.in.1"
        assert message.user_id == user.id
        assert message.direction == "inbound"
        assert message.is_received is True
        assert message.is_sender is False
        assert message.body == "Hello"
        assert message.sender_name == "Asha"
        assert message.status == "delivered"
        assert message.sent_at <= message.delivered_at
        assert message.raw_event["id"] == "wamid.in.1"
        assert message.raw_event["from"] == "919876543210"

    def test_existing_user_is_reused(self, client):
        client.post("/webhook", json=message_payload(message_id="wamid.in.1"))
        client.post("/webhook", json=message_payload(message_id="wamid.in.2", name="Someone Else"))

        assert count_users() == 1
        assert count_messages() == 2

    def test_missing_profile_name_uses_placeholder(self, client):
        payload = message_payload()
        del payload["entry"][0]["changes"][0]["value"]["contacts"]

        assert client.post("/webhook", json=payload).status_code == 200
        with SessionLocal() as session:
            assert session.query(User).one().full_name == "Unknown"

    def test_redelivered_message_is_stored_once(self, client):
        assert client.post("/webhook", json=message_payload()).status_code == 200
        assert client.post("/webhook", json=message_payload()).status_code == 200

        assert count_messages() == 1

    def test_media_message_keeps_caption(self, client):
        payload = message_payload()
        event = payload["entry"][0]["changes"][0]["value"]["messages"][0]
        del event["text"]
        event["type"] = "image"
        event["image"] = {"id": "media-1", "caption": "receipt", "mime_type": "image/jpeg"}

        assert client.post("/webhook", json=payload).status_code == 200
        with SessionLocal() as session:
            message = session.query(Message).one()
        assert message.has_attachment is True
        assert message.body == "receipt"


class TestStatusEvents:

    def test_delivered_then_read(self, client):
        key = send_outbound(client)

        assert client.post("/webhook", json=status_payload(key, "delivered")).status_code == 200
        assert load_sender_copy(key).status == "delivered"

        assert client.post("/webhook", json=status_payload(key, "read")).status_code == 200
        message = load_sender_copy(key)
        assert message.status == "seen"
        assert message.sent_at <= message.delivered_at <= message.seen_at

    def test_late_sent_after_read_is_ignored(self, client):
        key = send_outbound(client)
        client.post("/webhook", json=status_payload(key, "read"))
        before = load_sender_copy(key)

        response = client.post("/webhook", json=status_payload(key, "sent"))

        after = load_sender_copy(key)
        assert response.status_code == 200
        assert after.status == "seen"
        assert after.version == before.version
        assert after.seen_at == before.seen_at

    def test_repeated_status_changes_nothing(self, client):
        key = send_outbound(client)
        client.post("/webhook", json=status_payload(key, "delivered"))
        before = load_sender_copy(key)

        client.post("/webhook", json=status_payload(key, "delivered"))

        after = load_sender_copy(key)
        assert after.version == before.version
        assert after.delivered_at == before.delivered_at

    def test_unknown_status_keyword_is_accepted(self, client):
        key = send_outbound(client)
        response = client.post("/webhook", json=status_payload(key, "failed"))

        assert response.status_code == 200
        assert load_sender_copy(key).status == "sent"

    def test_untracked_message_is_dropped(self, client):
        response = client.post("/webhook", json=status_payload("wamid.unknown", "delivered"))

        assert response.status_code == 200
        assert count_messages() == 0


class TestUnknownAndMalformed:

    def test_other_event_kind_is_noop(self, client):
        payload = envelope({"messaging_product": "whatsapp", "errors": [{"code": 131000}]})

        response = client.post("/webhook", json=payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert count_messages() == 0
        assert count_users() == 0

    @pytest.mark.parametrize("payload", [
        {},
        {"entry": []},
        {"entry": [{"changes": []}]},
        {"entry": [{"changes": [{"field": "messages"}]}]},
        {"entry": [{"changes": [{"value": "not-an-object"}]}]},
        {"object": "whatsapp_business_account"},
        [],
    ])
    def test_missing_envelope_is_bad_request(self, client, payload):
        response = client.post("/webhook", json=payload)

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid webhook payload"}
        assert count_messages() == 0

    def test_invalid_json_is_bad_request(self, client):
        response = client.post(
            "/webhook",
            content="not valid json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_message_without_id_is_bad_request(self, client):
        payload = message_payload()
        del payload["entry"][0]["changes"][0]["value"]["messages"][0]["id"]

        response = client.post("/webhook", json=payload)

        assert response.status_code == 400
        assert count_messages() == 0
        assert count_users() == 0
