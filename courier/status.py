"""
Delivery-status reconciliation.

Provider status callbacks arrive late, duplicated and out of order. A record
may only move forward through created -> sent -> delivered -> seen, and each
milestone timestamp is written at most once. When an intermediate callback is
lost, reaching a later milestone backfills the skipped timestamps with the
same instant, so sent_at <= delivered_at <= seen_at always holds.

next_status and plan_transition are pure; StatusReconciler applies a planned
transition to the stored record through MessageStore.apply, which retries on
concurrent writers.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from courier.metrics import record_status_transition
from courier.models import DeliveryStatus
from courier.storage import MessageStore
from courier.utils import utc_now_iso

logger = logging.getLogger(__name__)


class StatusKeyword(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"
    UNKNOWN = "unknown"


# Provider keyword -> internal keyword. Everything else is UNKNOWN.
_PROVIDER_KEYWORDS = {
    "sent": StatusKeyword.SENT,
    "delivered": StatusKeyword.DELIVERED,
    "read": StatusKeyword.SEEN,
}

# keyword -> (target status, states it may be applied from)
_TRANSITIONS = {
    StatusKeyword.SENT: (DeliveryStatus.SENT, {DeliveryStatus.CREATED}),
    StatusKeyword.DELIVERED: (
        DeliveryStatus.DELIVERED,
        {DeliveryStatus.CREATED, DeliveryStatus.SENT},
    ),
    StatusKeyword.SEEN: (
        DeliveryStatus.SEEN,
        {DeliveryStatus.CREATED, DeliveryStatus.SENT, DeliveryStatus.DELIVERED},
    ),
}

# Timestamp column owned by each milestone, in milestone order
_MILESTONE_FIELDS = [
    (DeliveryStatus.SENT, "sent_at"),
    (DeliveryStatus.DELIVERED, "delivered_at"),
    (DeliveryStatus.SEEN, "seen_at"),
]


def parse_keyword(raw: Optional[str]) -> StatusKeyword:
    """Map a provider status keyword (e.g. "read") to a StatusKeyword."""
    if not raw:
        return StatusKeyword.UNKNOWN
    return _PROVIDER_KEYWORDS.get(raw.strip().lower(), StatusKeyword.UNKNOWN)


def next_status(current: DeliveryStatus, keyword: StatusKeyword) -> Optional[DeliveryStatus]:
    """
    Return the status a record in `current` moves to on `keyword`, or None
    when the keyword is unknown or would not move the record forward.
    """
    transition = _TRANSITIONS.get(keyword)
    if transition is None:
        return None
    target, allowed_from = transition
    if current not in allowed_from:
        return None
    return target


@dataclass(frozen=True)
class Transition:
    """A forward move plus the timestamps it writes (only previously unset ones)."""

    status: DeliveryStatus
    timestamps: Dict[str, str] = field(default_factory=dict)

    def apply_to(self, message) -> None:
        message.status = self.status.value
        for field_name, value in self.timestamps.items():
            setattr(message, field_name, value)


def plan_transition(message, keyword: StatusKeyword, now: str) -> Optional[Transition]:
    """
    Plan the effect of `keyword` on `message` without touching it.

    The target milestone's timestamp and every earlier unset one are set to
    `now`, raised to the latest timestamp already on the record so milestones
    never go backwards in time. Timestamps that are already set are never
    overwritten.
    """
    current = DeliveryStatus(message.status)
    target = next_status(current, keyword)
    if target is None:
        return None

    already_set = [getattr(message, f) for _, f in _MILESTONE_FIELDS if getattr(message, f)]
    if already_set:
        now = max(now, max(already_set))

    timestamps = {}
    for milestone, field_name in _MILESTONE_FIELDS:
        if milestone.rank > target.rank:
            break
        if getattr(message, field_name) is None:
            timestamps[field_name] = now
    return Transition(status=target, timestamps=timestamps)


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNTRACKED = "untracked"


class StatusReconciler:
    """Applies provider status keywords to stored messages."""

    def __init__(
        self,
        store: MessageStore,
        clock: Callable[[], str] = utc_now_iso,
        max_retries: int = 5,
    ):
        self.store = store
        self.clock = clock
        self.max_retries = max_retries

    def reconcile(self, idempotency_key: str, raw_keyword: Optional[str]) -> ReconcileOutcome:
        """
        Apply one status callback to the record behind `idempotency_key`.

        Unknown keys, unknown keywords and backward or repeated transitions
        are accepted and leave the record untouched.
        """
        keyword = parse_keyword(raw_keyword)

        def mutate(message) -> bool:
            # Read the clock per attempt, after the record was (re)read
            transition = plan_transition(message, keyword, self.clock())
            if transition is None:
                return False
            transition.apply_to(message)
            return True

        message, changed = self.store.apply(idempotency_key, mutate, retries=self.max_retries)

        if message is None:
            outcome = ReconcileOutcome.UNTRACKED
            logger.info(f"Status '{raw_keyword}' for untracked message {idempotency_key} dropped")
        elif changed:
            outcome = ReconcileOutcome.APPLIED
            logger.info(f"Message {idempotency_key} moved to '{message.status}' on '{raw_keyword}'")
        else:
            outcome = ReconcileOutcome.IGNORED
            logger.info(
                f"Status '{raw_keyword}' ignored for message {idempotency_key} "
                f"(current status '{message.status}')"
            )

        record_status_transition(outcome.value)
        return outcome
