"""
Delivery and read-receipt tracking.

WHAT: Advance message status (sent -> delivered -> seen) and broadcast acknowledgments
WHY: Senders see receipts; receivers get accurate unread badges
HOW: Store updates in the threadpool, then room events; empty rooms are logged, not fatal
"""

from collections import defaultdict
from datetime import datetime

from starlette.concurrency import run_in_threadpool

from ..models.message import ChatMessage
from ..utils.exceptions import AuthorizationError, DeliveryError
from ..utils.logger import get_logger
from .message_store import MessageStore
from .room_hub import RoomEvent, RoomHub

logger = get_logger(__name__)


class DeliveryTracker:
    """Status transitions plus the events that announce them."""

    def __init__(self, store: MessageStore, hub: RoomHub):
        self.store = store
        self.hub = hub

    def notify(self, user_id: str, event: RoomEvent) -> bool:
        """
        Push an event to a user's room.

        Returns:
            False if nobody was listening (the store already holds the durable status)
        """
        try:
            self.hub.deliver(user_id, event)
            return True
        except DeliveryError as e:
            logger.info(f"Dropped {event.event}: {e.message}")
            return False

    async def on_message_stored(self, message: ChatMessage) -> ChatMessage:
        """
        Mark a fresh message delivered if its receiver is online.

        Returns:
            The message with its current status
        """
        if not self.hub.is_present(message.receiver_id):
            return message

        changed = await run_in_threadpool(
            self.store.mark_delivered, [message.message_id], message.receiver_id
        )
        if not changed:
            return message

        self.notify(message.sender_id, RoomEvent(
            event="messagesDelivered",
            data={
                "messageIds": [message.message_id],
                "receiverId": message.receiver_id,
                "deliveredAt": datetime.utcnow().isoformat(),
            },
        ))
        return changed[0]

    async def acknowledge_seen(
        self,
        message_ids: list[str],
        receiver_id: str,
        caller_id: str,
    ) -> list[ChatMessage]:
        """
        Mark messages seen on behalf of their receiver.

        Each original sender gets one messagesSeen event listing only the ids
        that changed in this call; repeating the call broadcasts nothing.

        Raises:
            AuthorizationError: caller is not the receiver
        """
        if caller_id != receiver_id:
            raise AuthorizationError(caller_id, receiver_id, "mark messages as seen")

        changed = await run_in_threadpool(self.store.mark_seen, message_ids, receiver_id)
        if not changed:
            return []

        seen_at = datetime.utcnow().isoformat()
        by_sender: dict[str, list[str]] = defaultdict(list)
        for message in changed:
            by_sender[message.sender_id].append(message.message_id)

        for sender_id, ids in by_sender.items():
            self.notify(sender_id, RoomEvent(
                event="messagesSeen",
                data={"messageIds": ids, "seenAt": seen_at, "receiverId": receiver_id},
            ))

        await self.push_badge(receiver_id)
        return changed

    async def push_badge(self, user_id: str) -> int:
        """Send the user's unread message count as a badge-update event."""
        count = await run_in_threadpool(self.store.unread_count, user_id)
        self.notify(user_id, RoomEvent(
            event="badge-update",
            data={"type": "messages", "count": count, "userId": user_id},
        ))
        return count
