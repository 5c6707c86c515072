"""
Pydantic schemas for the message store boundary and the HTTP API.

This module contains:
- The typed Message record validated at the message store boundary
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError, field_validator

from telecom.errors import MalformedRecord
from telecom.utils import is_cell_digits


MessageStatus = Literal["sent", "delivered", "read"]

# Position of each status in the one-way delivery progression
STATUS_RANK: dict[str, int] = {"sent": 0, "delivered": 1, "read": 2}


# =============================================================================
# Message Store Records
# =============================================================================

class Message(BaseModel):
    """
    One directional text message as stored in the hosted message store.

    Records arrive from the store as untyped key/value blobs; ``from_record``
    is the only way they enter the application, so anything missing a numeric
    ``timestamp`` or carrying a non-string ``text`` is rejected here.
    """
    id: str = Field(..., min_length=1, description="Store-generated record id")
    sender: StrictStr = Field(..., min_length=1, description="Sender cell digits")
    recipient: StrictStr = Field(..., min_length=1, description="Recipient cell digits")
    text: StrictStr = Field(..., min_length=1, description="Message body")
    timestamp: StrictInt = Field(..., ge=0, description="Creation time, epoch milliseconds")
    status: MessageStatus = Field(default="sent", description="Delivery status")
    participants: StrictStr = Field(..., min_length=1, description="Conversation key")
    sender_name: Optional[str] = Field(None, alias="senderName")
    recipient_name: Optional[str] = Field(None, alias="recipientName")
    created_at: Optional[str] = Field(None, alias="createdAt")
    read_at: Optional[StrictInt] = Field(None, alias="readAt")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    @classmethod
    def from_record(cls, record_id: str, raw: Any) -> "Message":
        """
        Validate a raw store record.

        Args:
            record_id: Store key of the record
            raw: Record payload as returned by the store

        Returns:
            The typed message

        Raises:
            MalformedRecord: If the payload does not match the message schema
        """
        if not isinstance(raw, dict):
            raise MalformedRecord(record_id, f"expected an object, got {type(raw).__name__}")
        try:
            return cls.model_validate({**raw, "id": record_id})
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise MalformedRecord(record_id, f"invalid fields: {fields}") from e

    def to_record(self) -> dict:
        """Wire payload for the store (record id is the key, not a field)."""
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)


class ConversationSummary(BaseModel):
    """Last message and unread count of one conversation, from a viewer's side."""
    participants: str
    last_message: Optional[str] = None
    last_message_time: Optional[int] = None
    unread_count: int = 0


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of a send request.

    Emptiness is checked by the conversation layer so that an empty body is
    reported as such rather than as a generic validation error.
    """
    text: str = Field(
        ...,
        max_length=4096,
        description="Message text content"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"text": "hi"}]
        }
    }


class ContactCreate(BaseModel):
    """
    Body of an add-contact request.

    Validates:
    - cell_digits: digits only, at least 10 of them
    - contact_name: optional, max 100 characters
    """
    cell_digits: str = Field(
        ...,
        alias="cellDigits",
        description="Counterparty cell digits"
    )
    contact_name: Optional[str] = Field(
        None,
        alias="contactName",
        max_length=100,
        description="Display name for the contact"
    )

    @field_validator("cell_digits")
    @classmethod
    def validate_cell_digits(cls, v: str) -> str:
        v = v.strip()
        if not is_cell_digits(v):
            raise ValueError("Phone number must be at least 10 digits")
        return v

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"cellDigits": "15551230002", "contactName": "Remy"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A message as seen by one participant."""
    id: str = Field(..., description="Store-generated message id")
    sender: str = Field(..., description="Sender cell digits")
    recipient: str = Field(..., description="Recipient cell digits")
    text: str = Field(..., description="Message content")
    timestamp: int = Field(..., description="Creation time, epoch milliseconds")
    status: MessageStatus = Field(..., description="Delivery status")
    participants: str = Field(..., description="Conversation key")
    sender_name: Optional[str] = None
    recipient_name: Optional[str] = None
    read_at: Optional[int] = None
    from_me: bool = Field(..., description="True when the viewer sent this message")

    @classmethod
    def for_viewer(cls, message: Message, viewer: str) -> "MessageResponse":
        return cls(
            **message.model_dump(exclude={"created_at"}),
            from_me=message.sender == viewer,
        )


class ConversationResponse(BaseModel):
    """Response model for GET /conversations/{counterpart}/messages."""
    participants: str = Field(..., description="Conversation key")
    data: list[MessageResponse] = Field(
        default_factory=list,
        description="Messages ascending by timestamp"
    )
    limit: int = Field(..., ge=1, le=100, description="Maximum messages returned")


class StatusUpdateResponse(BaseModel):
    """Response model for delivery/read marking."""
    message_id: str
    status: MessageStatus = Field(..., description="Status after the call")
    changed: bool = Field(..., description="False when the call was a no-op")


class ContactResponse(BaseModel):
    """A contact with a summary of the conversation held with it."""
    id: int
    contact_cell_digits: str
    contact_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_message: Optional[str] = None
    last_message_time: Optional[int] = None
    unread_count: int = 0

    model_config = {
        "from_attributes": True,
    }


class ContactsListResponse(BaseModel):
    """Response model for GET /contacts."""
    data: list[ContactResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
