"""
SSE room stream.

WHAT: Server-Sent Events stream of the caller's room
WHY: Receive-only clients get newMessage/messagesSeen/badge-update without a socket
HOW: EventSourceResponse over a room subscription, with periodic heartbeats
"""

import json
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....services.chat_service import ChatService
from ....services.room_hub import RoomHub, RoomSubscription, room_name
from ....utils.logger import get_logger
from ...deps import get_chat_service, get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


async def room_event_generator(
    request: Request,
    hub: RoomHub,
    subscription: RoomSubscription,
) -> AsyncIterator[dict]:
    """
    Generate SSE events for one room subscription.

    WHAT: Stream room events with heartbeats
    WHY: Keep proxies from closing idle connections
    HOW: Wait on the subscription queue with the heartbeat interval as timeout

    Args:
        request: Incoming request, polled for disconnects
        hub: Hub the subscription is joined to
        subscription: Joined subscription (left when the stream ends)

    Yields:
        SSE event dicts
    """
    user_id = subscription.user_id
    logger.info(f"Starting SSE stream for {room_name(user_id)}")

    yield {
        "event": "connected",
        "retry": settings.SSE_RETRY_TIMEOUT * 1000,
        "data": json.dumps({
            "type": "connected",
            "userId": user_id,
            "timestamp": datetime.now().isoformat()
        })
    }

    try:
        while True:
            if await request.is_disconnected():
                break

            event = await subscription.get(timeout=settings.SSE_HEARTBEAT_INTERVAL)
            if event is None:
                yield {
                    "event": "heartbeat",
                    "data": json.dumps({
                        "type": "heartbeat",
                        "timestamp": datetime.now().isoformat()
                    })
                }
                continue

            yield event.to_sse()
    finally:
        hub.leave(subscription)
        logger.info(f"SSE stream ended for {room_name(user_id)}")


@router.get("/rooms/stream")
async def stream_room(
    request: Request,
    caller_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """
    Stream the caller's room via SSE.

    EventSource cannot set headers, so the credential may be passed as ?token=.

    Returns:
        EventSourceResponse with room events
    """
    subscription = service.hub.subscribe(caller_id)
    logger.info(f"SSE stream requested for {room_name(caller_id)}")

    return EventSourceResponse(
        room_event_generator(request, service.hub, subscription),
        media_type="text/event-stream"
    )
