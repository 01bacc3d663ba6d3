"""
Message endpoints.

WHAT: History, send, read receipts, conversation list and unread badge
WHY: REST path for clients that are not holding a socket, and for history fetches
HOW: FastAPI router delegating to ChatService with the verified caller id
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ....models.api_schemas import (
    BadgeResponse,
    ConversationSummary,
    HistoryResponse,
    MarkSeenRequest,
    MarkSeenResponse,
    SendMessageResponse,
)
from ....models.message import MessageDraft
from ....services.chat_service import ChatService
from ....utils.logger import get_logger
from ...deps import get_chat_service, get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


@router.get("/messages", response_model=HistoryResponse)
async def get_messages(
    user1: str = Query(..., min_length=1),
    user2: str = Query(..., min_length=1),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Conversation history between two users, oldest first.

    WHAT: Stored messages of the pair as the caller may render them
    WHY: Client history load and reconciliation
    HOW: Store query + role gating; bargain flags for the caller's counterparty

    Raises:
        AuthorizationError: caller is neither user1 nor user2
    """
    messages = await service.load_history(user1, user2, caller_id, limit)
    counterparty = user2 if caller_id == user1 else user1
    flags = await service.get_flags(caller_id, counterparty)

    logger.info(f"History {user1}<->{user2} for {caller_id}: {len(messages)} messages")
    return HistoryResponse(messages=messages, count=len(messages), flags=flags.to_dict())


@router.post("/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    draft: MessageDraft,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Send a message as the caller.

    Raises:
        ValidationError: empty or oversized message
        AuthorizationError: senderId differs from the caller
        BargainTransitionError: illegal negotiation step
    """
    message = await service.send(draft, caller_id)
    return SendMessageResponse(message=message, temp_id=draft.temp_id)


@router.post("/messages/seen", response_model=MarkSeenResponse)
async def mark_seen(
    request: MarkSeenRequest,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """Mark received messages as seen; only ids that changed are returned."""
    receiver_id = request.receiver_id or caller_id
    changed = await service.mark_seen(request.message_ids, receiver_id, caller_id)
    return MarkSeenResponse(
        message_ids=[m.message_id for m in changed],
        seen_at=datetime.utcnow(),
    )


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """Latest message per partner with a preview line, newest first."""
    return await service.list_conversations(caller_id)


@router.get("/badges", response_model=BadgeResponse)
async def get_badges(
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """Unread message count for the caller."""
    count = await service.unread_count(caller_id)
    return BadgeResponse(count=count, user_id=caller_id)
