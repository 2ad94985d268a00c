"""
Tests for the realtime notifier.

Tests cover:
- Broadcast reaches every observer and drops failing ones
- publish() outside an event loop is skipped, not raised
- End-to-end: a completed send is pushed over the /ws WebSocket
"""

import asyncio

from courier.main import get_notifier
from courier.models import Message
from courier.realtime import RealtimeNotifier


class FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)


def build_mirror() -> Message:
    return Message(
        id=1,
        idempotency_key="wamid.1",
        user_id=1,
        direction="outbound",
        is_sender=False,
        is_received=False,
        phone_number="919876543210",
        sender_name="System",
        body="Hello",
        has_attachment=False,
        status="sent",
        sent_at="2025-01-15T10:00:00.000000Z",
        created_at="2025-01-15T10:00:00.000000Z",
    )


class TestBroadcast:

    def test_failing_observer_does_not_block_others(self):
        notifier = RealtimeNotifier()
        healthy, broken, other = FakeSocket(), FakeSocket(fail=True), FakeSocket()
        notifier._connections.update({healthy, broken, other})
        event = RealtimeNotifier.build_event(build_mirror())

        delivered = asyncio.run(notifier.broadcast(event))

        assert delivered == 2
        assert healthy.sent == [event]
        assert other.sent == [event]
        assert notifier.observer_count == 2

    def test_build_event_shape(self):
        event = RealtimeNotifier.build_event(build_mirror())

        assert event["event"] == "new_message"
        assert event["data"]["idempotency_key"] == "wamid.1"
        assert event["data"]["is_sender"] is False

    def test_publish_without_running_loop_is_skipped(self):
        assert RealtimeNotifier().publish(build_mirror()) is None

    def test_publish_schedules_broadcast(self):
        notifier = RealtimeNotifier()
        socket = FakeSocket()
        notifier._connections.add(socket)

        async def run():
            task = notifier.publish(build_mirror())
            await task

        asyncio.run(run())
        assert len(socket.sent) == 1


class TestWebSocket:

    def test_send_is_pushed_to_observer(self, client):
        # Use a real notifier for this test instead of the recording one
        notifier = RealtimeNotifier()
        client.app.dependency_overrides[get_notifier] = lambda: notifier

        with client.websocket_connect("/ws") as websocket:
            response = client.post(
                "/messages/send/number",
                json={"contact_no": "919876543210", "message": "Hello"},
            )
            assert response.status_code == 200

            event = websocket.receive_json()

        assert event["event"] == "new_message"
        assert event["data"]["idempotency_key"] == response.json()["message_id"]
        assert event["data"]["is_sender"] is False
        assert event["data"]["body"] == "Hello"
