"""
Pydantic API schemas for the chat endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and camelCase serialization matching the web client
HOW: Pydantic v2 models with aliases and constraints
"""

from typing import Optional, List, Dict, Literal
from pydantic import BaseModel, Field
from datetime import datetime

from .bargain import BargainSession
from .message import ChatMessage


# ========== Messages ==========

class HistoryResponse(BaseModel):
    """Conversation history as the caller may see it."""
    messages: List[ChatMessage]
    count: int = Field(..., ge=0)
    flags: Dict[str, List[str]] = Field(default_factory=dict, description="ended/active/accepted bargain keys")


class SendMessageResponse(BaseModel):
    """Stored message with the client's optimistic id echoed back."""
    message: ChatMessage
    temp_id: Optional[str] = Field(default=None, alias="tempId")

    model_config = {"populate_by_name": True}


class MarkSeenRequest(BaseModel):
    """Read receipt for a batch of received messages."""
    message_ids: List[str] = Field(..., min_length=1, alias="messageIds")
    receiver_id: Optional[str] = Field(default=None, alias="receiverId", description="Defaults to the caller")

    model_config = {"populate_by_name": True}


class MarkSeenResponse(BaseModel):
    """Ids that changed status in this call."""
    message_ids: List[str] = Field(..., alias="messageIds")
    seen_at: datetime = Field(..., alias="seenAt")

    model_config = {"populate_by_name": True}


class ConversationSummary(BaseModel):
    """One row of the conversation list."""
    partner_id: str = Field(..., alias="partnerId")
    preview: str
    last_message: ChatMessage = Field(..., alias="lastMessage")
    unread_count: int = Field(default=0, ge=0, alias="unreadCount")

    model_config = {"populate_by_name": True}


class BadgeResponse(BaseModel):
    """Unread badge, same shape as the badge-update event."""
    type: Literal["messages"] = "messages"
    count: int = Field(..., ge=0)
    user_id: str = Field(..., alias="userId")

    model_config = {"populate_by_name": True}


# ========== Bargains ==========

class BargainListResponse(BaseModel):
    """Folded bargain sessions between the caller and one counterparty."""
    sessions: List[BargainSession]
    flags: Dict[str, List[str]]


class BargainActionRequest(BaseModel):
    """Accept/decline/end the current bargain for a product."""
    counterparty_id: str = Field(..., min_length=1, max_length=100, alias="counterpartyId")
    role: Optional[Literal["buyer", "seller"]] = Field(
        default=None,
        description=(
            "Role the caller acts in while the history has not fixed buyer and seller; "
            "a role that contradicts the history is rejected with 409"
        )
    )

    model_config = {"populate_by_name": True}


class BargainActionResponse(BaseModel):
    """The negotiation message the action produced."""
    message: ChatMessage
