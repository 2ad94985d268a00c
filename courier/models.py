"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import Boolean, Column, Integer, JSON, String, Text, UniqueConstraint

from courier.storage import Base


class Direction(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, enum.Enum):
    """Delivery milestones in the only order a record may pass through them."""

    CREATED = "created"
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    DeliveryStatus.CREATED,
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.SEEN,
]


class User(Base):
    """
    Directory entry, resolved or created by normalized phone number.

    Table: users
    Unique: phone_number (backs the atomic get-or-create)
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String, nullable=False)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    is_temp_name = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Message(Base):
    """
    One logical delivery event seen from one party's perspective.

    Table: messages
    Unique: (idempotency_key, is_sender), so an outbound send owns exactly one
    sender-perspective record and one receiver-perspective mirror.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("idempotency_key", "is_sender", name="uq_messages_key_perspective"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    direction = Column(String, nullable=False)
    is_sender = Column(Boolean, nullable=False, default=False)
    is_received = Column(Boolean, nullable=False, default=False)
    phone_number = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    body = Column(Text, nullable=False, default="")
    has_attachment = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=DeliveryStatus.CREATED.value)
    sent_at = Column(String, nullable=True)  # ISO-8601 UTC, write-once
    delivered_at = Column(String, nullable=True)  # ISO-8601 UTC, write-once
    seen_at = Column(String, nullable=True)  # ISO-8601 UTC, write-once
    raw_event = Column(JSON, nullable=True)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
