"""
Outbound sends.

A send to a phone number stores two records under one idempotency key: the
sender-perspective copy and the recipient's inbox mirror. The mirror is
pushed to realtime observers. Nothing is stored when the transport fails.
"""

import logging
import uuid
from typing import Optional

from courier.errors import ConflictError, NotFoundError, TransportError, ValidationError
from courier.metrics import record_outbound_message
from courier.models import DeliveryStatus, Direction, Message
from courier.realtime import RealtimeNotifier
from courier.storage import Directory, MessageStore
from courier.transport import Transport
from courier.utils import normalize_phone, utc_now_iso

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Unknown"
SYSTEM_SENDER_NAME = "System"


def synthesize_key() -> str:
    return f"msg-{uuid.uuid4().hex}"


class MessageSender:
    def __init__(
        self,
        store: MessageStore,
        directory: Directory,
        transport: Transport,
        notifier: RealtimeNotifier,
    ):
        self.store = store
        self.directory = directory
        self.transport = transport
        self.notifier = notifier

    async def send(self, recipient_phone: Optional[str], body: Optional[str]) -> str:
        """
        Send `body` to a phone number, registering the contact if needed.

        Returns:
            The idempotency key shared by the stored sender/receiver pair.

        Raises:
            ValidationError: missing phone number or empty body.
            TransportError: dispatch failed; no message was stored.
        """
        if not recipient_phone or not body or not body.strip():
            raise ValidationError("Contact number and message are required")
        phone = normalize_phone(recipient_phone)

        user, _ = self.directory.get_or_create(phone, full_name=PLACEHOLDER_NAME, provisional=True)
        key = await self._dispatch(phone, body)

        now = utc_now_iso()
        try:
            self.store.create(self._build_record(key, user, body, now, is_sender=True))
        except ConflictError:
            logger.warning(f"Send {key} already recorded, skipping mirror and publish")
            record_outbound_message("duplicate")
            return key

        # A failure here leaves the sender copy without its mirror, which is tolerated
        mirror = self.store.create(self._build_record(key, user, body, now, is_sender=False))
        self.notifier.publish(mirror)

        record_outbound_message("sent")
        logger.info(f"Message {key} sent to {phone} and mirrored for user {user.id}")
        return key

    async def send_to_user(self, user_id: int, body: Optional[str]) -> str:
        """
        Send `body` to an existing directory entry.

        Only the sender-perspective record is stored; nothing is published.

        Raises:
            ValidationError: empty body.
            NotFoundError: unknown user.
            TransportError: dispatch failed; no message was stored.
        """
        if not body or not body.strip():
            raise ValidationError("Message cannot be empty")

        user = self.directory.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        key = await self._dispatch(user.phone_number, body)
        now = utc_now_iso()
        try:
            self.store.create(self._build_record(key, user, body, now, is_sender=True))
        except ConflictError:
            logger.warning(f"Send {key} already recorded")
            record_outbound_message("duplicate")
            return key

        record_outbound_message("sent")
        logger.info(f"Message {key} sent to user {user.id}")
        return key

    async def _dispatch(self, phone: str, body: str) -> str:
        try:
            provider_id = await self.transport.send_text(phone, body)
        except TransportError:
            record_outbound_message("transport_error")
            raise
        return provider_id or synthesize_key()

    @staticmethod
    def _build_record(key: str, user, body: str, now: str, is_sender: bool) -> Message:
        return Message(
            idempotency_key=key,
            user_id=user.id,
            direction=Direction.OUTBOUND.value,
            is_sender=is_sender,
            is_received=False,
            phone_number=user.phone_number,
            sender_name=SYSTEM_SENDER_NAME,
            body=body,
            has_attachment=False,
            status=DeliveryStatus.SENT.value,
            sent_at=now,
        )
