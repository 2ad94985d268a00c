"""
Webhook ingestion: validate the provider envelope, split it into message
events and status events, and route each one.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from courier.errors import ConflictError, MalformedPayloadError
from courier.metrics import record_webhook_event
from courier.models import DeliveryStatus, Direction, Message
from courier.schemas import InboundMessageEvent, WebhookValue
from courier.status import StatusReconciler
from courier.storage import Directory, MessageStore
from courier.utils import normalize_phone, unix_to_iso, utc_now_iso

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Unknown"


@dataclass
class IngestResult:
    """Per-kind outcome counters for one webhook delivery."""

    messages: Counter = field(default_factory=Counter)
    statuses: Counter = field(default_factory=Counter)

    def as_log_data(self) -> dict:
        return {"messages": dict(self.messages), "statuses": dict(self.statuses)}


def extract_values(payload: Any) -> list:
    """
    Return every entry[*].changes[*].value object in the payload.

    Raises:
        MalformedPayloadError: entry[0].changes[0].value is missing or not
            an object.
    """
    try:
        first = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        raise MalformedPayloadError("Invalid webhook payload")
    if not isinstance(first, dict):
        raise MalformedPayloadError("Invalid webhook payload")

    values = []
    for entry in payload["entry"]:
        changes = entry.get("changes") if isinstance(entry, dict) else None
        for change in changes or []:
            value = change.get("value") if isinstance(change, dict) else None
            if isinstance(value, dict):
                values.append(value)
    return values


class WebhookIngester:
    """Applies provider webhook deliveries to the message store."""

    def __init__(
        self,
        store: MessageStore,
        directory: Directory,
        reconciler: Optional[StatusReconciler] = None,
    ):
        self.store = store
        self.directory = directory
        self.reconciler = reconciler or StatusReconciler(store)

    def ingest(self, payload: Any) -> IngestResult:
        """
        Process one webhook delivery.

        Values carrying neither messages nor statuses are provider event
        kinds this service does not track; they are accepted and skipped.

        Raises:
            MalformedPayloadError: the envelope or an event in it is invalid.
                Nothing is written in that case.
        """
        raw_values = extract_values(payload)
        try:
            values = [(raw, WebhookValue.model_validate(raw)) for raw in raw_values]
        except PydanticValidationError as e:
            logger.error(f"Webhook event validation failed: {e}")
            raise MalformedPayloadError("Invalid webhook payload")

        result = IngestResult()
        for raw, value in values:
            if "messages" in raw:
                for event in value.messages or []:
                    result.messages[self._handle_message(value, event)] += 1
            elif "statuses" in raw:
                for event in value.statuses or []:
                    outcome = self.reconciler.reconcile(event.id, event.status)
                    result.statuses[outcome.value] += 1
            else:
                logger.info(f"Ignoring webhook value without messages or statuses: keys={sorted(raw)}")
                record_webhook_event("other", "ignored")

        for outcome, count in result.messages.items():
            record_webhook_event("message", outcome, count)
        for outcome, count in result.statuses.items():
            record_webhook_event("status", outcome, count)
        return result

    def _handle_message(self, value: WebhookValue, event: InboundMessageEvent) -> str:
        phone = normalize_phone(event.from_number)
        user, created = self.directory.get_or_create(
            phone,
            full_name=value.profile_name(event.from_number) or PLACEHOLDER_NAME,
            provisional=True,
        )
        if created:
            logger.info(f"New contact {phone} registered with provisional name")

        now = utc_now_iso()
        # Provider clock may run ahead of ours; sent_at must not pass delivered_at
        provider_sent_at = unix_to_iso(event.timestamp)
        sent_at = min(provider_sent_at, now) if provider_sent_at else now
        message = Message(
            idempotency_key=event.id,
            user_id=user.id,
            direction=Direction.INBOUND.value,
            is_sender=False,
            is_received=True,
            phone_number=phone,
            sender_name=user.full_name,
            body=event.body,
            has_attachment=event.has_attachment,
            status=DeliveryStatus.DELIVERED.value,
            sent_at=sent_at,
            delivered_at=now,
            raw_event=event.model_dump(mode="json", by_alias=True),
        )
        try:
            self.store.create(message)
        except ConflictError:
            logger.info(f"Inbound message {event.id} already recorded")
            return "duplicate"
        return "created"
