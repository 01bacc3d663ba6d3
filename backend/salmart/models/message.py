"""
Message domain models.

WHAT: Message kinds, delivery/bargain statuses, stored record and send draft
WHY: One typed vocabulary shared by the store, bargain fold, transport and client
HOW: str Enums for closed tag sets, Pydantic v2 models with camelCase wire aliases
"""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class MessageKind(str, enum.Enum):
    """Closed set of message kinds."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    BARGAIN_START = "bargainStart"
    END_BARGAIN = "end-bargain"
    BUYER_ACCEPT = "buyerAccept"
    SELLER_ACCEPT = "sellerAccept"
    SELLER_DECLINE = "sellerDecline"
    BUYER_DECLINE_RESPONSE = "buyerDeclineResponse"
    OFFER = "offer"
    COUNTER_OFFER = "counter-offer"


class DeliveryStatus(str, enum.Enum):
    """Delivery status, advancing sent -> delivered -> seen."""
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"


class BargainStatus(str, enum.Enum):
    """Resolution recorded on a negotiation message."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class AttachmentType(str, enum.Enum):
    """Attachment categories."""
    IMAGE = "image"
    FILE = "file"
    RECEIPT = "receipt"


# Kinds whose text carries a structured negotiation payload
NEGOTIATION_KINDS = frozenset({
    MessageKind.BARGAIN_START,
    MessageKind.END_BARGAIN,
    MessageKind.BUYER_ACCEPT,
    MessageKind.SELLER_ACCEPT,
    MessageKind.SELLER_DECLINE,
    MessageKind.BUYER_DECLINE_RESPONSE,
    MessageKind.OFFER,
    MessageKind.COUNTER_OFFER,
})

# Delivery status can only move forward along this order
STATUS_RANK = {
    DeliveryStatus.SENT: 0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.SEEN: 2,
}


def is_negotiation_kind(kind: MessageKind | str) -> bool:
    """Return True if messages of this kind carry a negotiation payload."""
    try:
        return MessageKind(kind) in NEGOTIATION_KINDS
    except ValueError:
        return False


class Attachment(BaseModel):
    """Single attachment reference."""

    url: str = ""
    type: Optional[AttachmentType] = None


class ChatMessage(BaseModel):
    """
    A stored message as exposed on the wire.

    Serialized with `by_alias=True` this yields the event payload shape
    `{id, senderId, receiverId, text, attachment, messageType, status,
    proposedPrice, bargainStatus, tempId, createdAt}`.
    """

    message_id: str = Field(alias="id")
    sender_id: str = Field(alias="senderId")
    receiver_id: str = Field(alias="receiverId")
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")
    status: DeliveryStatus = DeliveryStatus.SENT
    proposed_price: Optional[float] = Field(default=None, alias="proposedPrice")
    bargain_status: Optional[BargainStatus] = Field(default=None, alias="bargainStatus")
    temp_id: Optional[str] = Field(default=None, alias="tempId")  # sender's optimistic id, echoed in history
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")

    model_config = {"populate_by_name": True}

    def involves(self, user_a: str, user_b: str) -> bool:
        """True if this message belongs to the conversation between user_a and user_b."""
        return {self.sender_id, self.receiver_id} == {user_a, user_b}

    def to_wire(self, **extra: Any) -> dict:
        """JSON-safe camelCase dict, with optional extra keys (e.g. tempId)."""
        payload = self.model_dump(by_alias=True, mode="json")
        payload.update(extra)
        return payload


class MessageDraft(BaseModel):
    """
    A message as submitted by a sender, before the store assigns identity.

    The text/attachment invariant is enforced by the store, not here, so that
    the rejection surfaces as the domain ValidationError.
    """

    sender_id: Optional[str] = Field(default=None, alias="senderId")
    receiver_id: str = Field(alias="receiverId", min_length=1, max_length=100)
    text: Optional[str] = None
    attachment: Optional[Attachment] = None
    message_type: MessageKind = Field(default=MessageKind.TEXT, alias="messageType")
    proposed_price: Optional[float] = Field(default=None, ge=0, alias="proposedPrice")
    bargain_status: Optional[BargainStatus] = Field(default=None, alias="bargainStatus")
    temp_id: Optional[str] = Field(default=None, alias="tempId", max_length=100)

    model_config = {"populate_by_name": True}

    @property
    def attachment_url(self) -> str:
        return (self.attachment.url if self.attachment else "") or ""

    def has_content(self) -> bool:
        """Text or attachment URL must be non-empty."""
        return bool((self.text or "").strip()) or bool(self.attachment_url.strip())
