"""
Per-user rooms for real-time fan-out.

WHAT: In-memory room membership and event queues for socket and SSE subscribers
WHY: A user's tabs and devices all receive the same events, in server order
HOW: One asyncio.Queue per subscription, grouped by user id; mutated only on the event loop
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.config import settings
from ..utils.exceptions import AuthorizationError, DeliveryError
from ..utils.logger import get_logger

logger = get_logger(__name__)


def room_name(user_id: str) -> str:
    """Room identifier for a user."""
    return f"user_{user_id}"


class RoomEvent(BaseModel):
    """A named event pushed to a room."""

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def payload(self) -> dict:
        """Event data with type and timestamp fields added."""
        body = dict(self.data)
        body.setdefault("type", self.event)
        body.setdefault("timestamp", self.timestamp.isoformat())
        return body

    def to_sse(self) -> dict:
        """Shape expected by EventSourceResponse."""
        return {"event": self.event, "data": json.dumps(self.payload())}

    def to_socket(self) -> dict:
        """Frame sent over the WebSocket."""
        return {"event": self.event, "data": self.payload()}


class RoomSubscription:
    """
    One live connection's view of a room.

    A connection joins at most one room; joining the same room again is a no-op.
    """

    def __init__(self, maxsize: Optional[int] = None):
        self.subscription_id = str(uuid4())
        self.user_id: Optional[str] = None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.ROOM_QUEUE_MAXSIZE)

    @property
    def joined(self) -> bool:
        return self.user_id is not None

    async def get(self, timeout: Optional[float] = None) -> Optional[RoomEvent]:
        """Next event, or None if `timeout` seconds pass without one."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class RoomHub:
    """
    Room membership table and broadcaster.

    WHAT: Map user id -> live subscriptions
    WHY: Presence and fan-out for the delivery tracker and transport endpoints
    HOW: Plain dict of sets; callers stay on the event loop, so no locking
    """

    def __init__(self):
        self.rooms: Dict[str, Set[RoomSubscription]] = {}

    def join(self, subscription: RoomSubscription, user_id: str, caller_id: str) -> bool:
        """
        Add a connection to a user's room.

        Args:
            subscription: The connection's subscription
            user_id: Room owner requested by the client
            caller_id: Verified identity of the connection

        Returns:
            True if the connection joined now, False if it was already in the room

        Raises:
            AuthorizationError: joining someone else's room, or switching rooms
        """
        if user_id != caller_id:
            raise AuthorizationError(caller_id, user_id, "join room")
        if subscription.user_id == user_id:
            logger.debug(f"Subscription {subscription.subscription_id} already in {room_name(user_id)}")
            return False
        if subscription.joined:
            raise AuthorizationError(caller_id, user_id, "switch rooms")

        subscription.user_id = user_id
        self.rooms.setdefault(user_id, set()).add(subscription)
        logger.info(
            f"Subscription {subscription.subscription_id} joined {room_name(user_id)} "
            f"({len(self.rooms[user_id])} live)"
        )
        return True

    def subscribe(self, user_id: str) -> RoomSubscription:
        """Create a subscription already joined to the user's own room."""
        subscription = RoomSubscription()
        self.join(subscription, user_id, user_id)
        return subscription

    def leave(self, subscription: RoomSubscription) -> None:
        """Remove a connection from its room; unknown subscriptions are ignored."""
        user_id = subscription.user_id
        if user_id is None:
            return
        members = self.rooms.get(user_id)
        if members is not None:
            members.discard(subscription)
            if not members:
                del self.rooms[user_id]
        subscription.user_id = None
        logger.info(f"Subscription {subscription.subscription_id} left {room_name(user_id)}")

    def is_present(self, user_id: str) -> bool:
        """True if the user has at least one live subscription."""
        return bool(self.rooms.get(user_id))

    def subscriber_count(self, user_id: str) -> int:
        return len(self.rooms.get(user_id, ()))

    def publish(self, user_id: str, event: RoomEvent) -> int:
        """
        Queue an event for every subscription in the user's room.

        Returns:
            Number of subscriptions the event was queued for (0 for an empty room)
        """
        delivered = 0
        for subscription in list(self.rooms.get(user_id, ())):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Queue full for subscription {subscription.subscription_id} in "
                    f"{room_name(user_id)}, dropping {event.event}"
                )
        return delivered

    def deliver(self, user_id: str, event: RoomEvent) -> int:
        """
        Publish an event that is expected to reach someone.

        Raises:
            DeliveryError: nobody in the room received it
        """
        delivered = self.publish(user_id, event)
        if delivered == 0:
            raise DeliveryError(room_name(user_id), event.event)
        return delivered

    def clear(self) -> None:
        """Drop all rooms."""
        self.rooms.clear()


# Global hub instance
room_hub = RoomHub()
