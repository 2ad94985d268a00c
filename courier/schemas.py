"""
Pydantic schemas for request/response validation.

This module contains:
- Provider webhook event models (the contents of entry[].changes[].value)
- Request models for the send endpoints
- Response models for API responses and the realtime event
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Provider Webhook Models
# =============================================================================

MEDIA_MESSAGE_TYPES = {"image", "video", "audio", "document", "sticker"}


class ContactProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None


class WebhookContact(BaseModel):
    model_config = ConfigDict(extra="allow")

    wa_id: Optional[str] = None
    profile: Optional[ContactProfile] = None


class TextContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    body: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """
    One element of value.messages.

    Only text content is read; media messages contribute their caption and
    the has_attachment flag.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1, description="Provider message id")
    from_number: str = Field(..., alias="from", min_length=1, description="Sender phone number")
    type: Optional[str] = Field(None, description="Provider message type")
    timestamp: Optional[str] = Field(None, description="Unix seconds, as sent by the provider")
    text: Optional[TextContent] = None

    @property
    def has_attachment(self) -> bool:
        return self.type in MEDIA_MESSAGE_TYPES

    @property
    def body(self) -> str:
        if self.text is not None and self.text.body:
            return self.text.body
        if self.has_attachment:
            media = (self.model_extra or {}).get(self.type) or {}
            if isinstance(media, dict):
                return media.get("caption") or ""
        return ""


class StatusEvent(BaseModel):
    """One element of value.statuses."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Provider message id")
    status: Optional[str] = Field(None, description="Provider status keyword")
    timestamp: Optional[str] = None


class WebhookValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: Optional[list[InboundMessageEvent]] = None
    statuses: Optional[list[StatusEvent]] = None
    contacts: Optional[list[WebhookContact]] = None

    def profile_name(self, wa_id: str) -> Optional[str]:
        """Profile name for a sender, falling back to the first contact."""
        contacts = self.contacts or []
        for contact in contacts:
            if contact.wa_id == wa_id and contact.profile and contact.profile.name:
                return contact.profile.name
        if contacts and contacts[0].profile:
            return contacts[0].profile.name
        return None


# =============================================================================
# Request Models
# =============================================================================

class SendToUserRequest(BaseModel):
    """Body for POST /messages/send/user/{user_id}."""
    message: Optional[str] = Field(None, description="Message text")


class SendToNumberRequest(BaseModel):
    """Body for POST /messages/send/number."""
    contact_no: Optional[str] = Field(None, description="Recipient phone number")
    message: Optional[str] = Field(None, description="Message text")

    model_config = {
        "json_schema_extra": {
            "examples": [{"contact_no": "911234567890", "message": "Hello"}]
        }
    }


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class SendResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")
    message_id: str = Field(..., description="Idempotency key shared by the stored records")


class MessageResponse(BaseModel):
    """
    A stored message as returned by listings and pushed to realtime observers.
    """
    id: int
    idempotency_key: str
    user_id: int
    direction: str
    is_sender: bool
    is_received: bool
    phone_number: Optional[str] = None
    sender_name: Optional[str] = None
    body: str
    has_attachment: bool
    status: str
    sent_at: Optional[str] = None
    delivered_at: Optional[str] = None
    seen_at: Optional[str] = None
    raw_event: Optional[dict[str, Any]] = None
    created_at: str

    model_config = {"from_attributes": True}


class MessagesPageResponse(BaseModel):
    """
    Response model for message listings.

    - messages: the page's items, newest first
    - total: total messages for the user
    - page: 1-indexed page number used
    - limit: page size used
    - total_pages: ceil(total / limit)
    """
    messages: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)


class RealtimeEvent(BaseModel):
    event: str = Field(default="new_message")
    data: MessageResponse


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
