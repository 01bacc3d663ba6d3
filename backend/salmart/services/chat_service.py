"""
Chat service.

WHAT: Send, history, receipts, conversation list and bargain actions for one caller
WHY: REST and socket handlers share one authorized path into store, fold and rooms
HOW: Async facade; blocking store calls run in the threadpool, events go through the room hub
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from ..models.bargain import BargainFlags, BargainSession
from ..models.message import (
    BargainStatus,
    ChatMessage,
    MessageDraft,
    MessageKind,
    is_negotiation_kind,
)
from ..utils.exceptions import AuthorizationError, BargainTransitionError, MalformedPayloadError
from ..utils.logger import get_logger
from .bargain_machine import (
    ACCEPT_KINDS,
    DECLINE_KINDS,
    PRICE_KINDS,
    RESOLUTION_STATUS,
    derive_flags,
    find_session,
    fold_conversation,
    is_visible_to,
    negotiation_view,
    validate_transition,
)
from .delivery_tracker import DeliveryTracker
from .message_store import MessageStore
from .payload_codec import (
    format_negotiation_payload,
    format_price,
    parse_negotiation_payload,
    strip_role_claims,
    summarize,
    truncate_preview,
)
from .room_hub import RoomEvent, RoomHub, room_hub

logger = get_logger(__name__)


class ChatService:
    """
    Entry point for every chat operation.

    WHAT: Authorize, validate, persist, fan out
    WHY: Identity checks and bargain rules must hold whichever transport is used
    HOW: Per-conversation asyncio locks serialize negotiation validation with its append
    """

    def __init__(self, store: Optional[MessageStore] = None, hub: Optional[RoomHub] = None):
        self.store = store or MessageStore()
        self.hub = hub or room_hub
        self.tracker = DeliveryTracker(self.store, self.hub)
        self._locks: dict[frozenset, asyncio.Lock] = {}
        self._lock_users: dict[frozenset, int] = {}

    @asynccontextmanager
    async def _conversation_lock(self, user_a: str, user_b: str):
        """Hold the pair's lock; the lock is dropped once nobody holds or awaits it."""
        key = frozenset({user_a, user_b})
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def send(self, draft: MessageDraft, caller_id: str) -> ChatMessage:
        """
        Store and broadcast a message from the caller.

        Args:
            draft: Submitted message (senderId optional; must equal caller if given)
            caller_id: Verified identity

        Returns:
            Stored message

        Raises:
            AuthorizationError: draft names another sender
            ValidationError: empty or oversized message
            BargainTransitionError: negotiation message is not a legal next step
        """
        return await self._submit(draft, caller_id, server_built=False)

    async def _submit(self, draft: MessageDraft, caller_id: str, server_built: bool) -> ChatMessage:
        if draft.sender_id and draft.sender_id != caller_id:
            raise AuthorizationError(caller_id, draft.sender_id, "send messages")
        draft = draft.model_copy(update={"sender_id": caller_id})

        async with self._conversation_lock(caller_id, draft.receiver_id):
            resolution = None
            if is_negotiation_kind(draft.message_type):
                draft, resolution = await self._prepare_negotiation(draft, server_built)

            message = await run_in_threadpool(self.store.append, draft)
            if resolution is not None:
                await run_in_threadpool(self.store.set_bargain_status, *resolution)

        return await self._fan_out(message, draft.temp_id)

    async def _prepare_negotiation(
        self,
        draft: MessageDraft,
        server_built: bool = False,
    ) -> tuple[MessageDraft, Optional[tuple[str, BargainStatus]]]:
        """
        Validate a negotiation draft against the current session.

        Client drafts lose any sellerId/buyerId; price and bargain status are
        always set here, never taken from the client.

        Returns:
            (draft with price/status filled in, (answered offer id, status) or None)
        """
        if not server_built:
            stripped = strip_role_claims(draft.text)
            if stripped != draft.text:
                logger.info(f"Dropped role claims from {draft.message_type.value} sent by {draft.sender_id}")
                draft = draft.model_copy(update={"text": stripped})

        try:
            payload = parse_negotiation_payload(draft.text)
        except MalformedPayloadError as e:
            # Stored as inert text; the fold ignores it
            logger.warning(
                f"{draft.message_type.value} from {draft.sender_id} has malformed payload "
                f"({e.details['reason']}), storing without bargain effect"
            )
            return draft.model_copy(update={"proposed_price": None, "bargain_status": None}), None

        history = await run_in_threadpool(self.store.list_between, draft.sender_id, draft.receiver_id)
        pending = ChatMessage(
            message_id=f"pending-{uuid4()}",
            sender_id=draft.sender_id,
            receiver_id=draft.receiver_id,
            text=draft.text,
            message_type=draft.message_type,
            created_at=datetime.utcnow(),
        )
        previous_offer_id = None
        session = validate_transition(history, pending, payload)
        kind = draft.message_type

        updates = {"proposed_price": None, "bargain_status": None}
        if kind in PRICE_KINDS:
            updates = {"proposed_price": payload.price, "bargain_status": BargainStatus.PENDING}
        elif kind in ACCEPT_KINDS or kind in DECLINE_KINDS:
            updates = {"proposed_price": session.frozen_price, "bargain_status": RESOLUTION_STATUS[kind]}
            previous_offer_id = session.last_offer_message_id
        elif kind == MessageKind.BARGAIN_START:
            updates["proposed_price"] = payload.price

        logger.info(
            f"Bargain {session.product_id} ({session.buyer_id}/{session.seller_id}) -> "
            f"{session.state.value} via {kind.value} from {draft.sender_id}"
        )
        resolution = (previous_offer_id, RESOLUTION_STATUS[kind]) if previous_offer_id else None
        return draft.model_copy(update=updates), resolution

    async def _fan_out(self, message: ChatMessage, temp_id: Optional[str]) -> ChatMessage:
        """Push newMessage/messageSynced, delivered receipts and the receiver's badge."""
        self.tracker.notify(message.receiver_id, RoomEvent(event="newMessage", data=message.to_wire()))

        synced = message.to_wire(tempId=temp_id)
        # A buyerAccept is acknowledged to the seller who sent it but never rendered there
        if is_visible_to(message, message.sender_id):
            self.hub.publish(message.sender_id, RoomEvent(event="newMessage", data=synced))
        self.hub.publish(message.sender_id, RoomEvent(event="messageSynced", data=synced))

        message = await self.tracker.on_message_stored(message)
        await self.tracker.push_badge(message.receiver_id)
        return message

    async def load_history(
        self,
        user_a: str,
        user_b: str,
        caller_id: str,
        limit: Optional[int] = None,
    ) -> list[ChatMessage]:
        """
        Conversation history as the caller may see it, oldest first.

        Raises:
            AuthorizationError: caller is not a participant
        """
        if caller_id not in (user_a, user_b):
            raise AuthorizationError(caller_id, f"{user_a}/{user_b}", "read conversation")
        messages = await run_in_threadpool(self.store.list_between, user_a, user_b, limit)
        return negotiation_view(messages, caller_id)

    async def mark_seen(self, message_ids: list[str], receiver_id: str, caller_id: str) -> list[ChatMessage]:
        """Mark messages seen; see DeliveryTracker.acknowledge_seen."""
        return await self.tracker.acknowledge_seen(message_ids, receiver_id, caller_id)

    async def unread_count(self, caller_id: str) -> int:
        return await run_in_threadpool(self.store.unread_count, caller_id)

    async def list_conversations(self, caller_id: str) -> list[dict]:
        """
        Latest message per partner with a preview line, newest first.

        Returns:
            List of {partnerId, preview, lastMessage, unreadCount}
        """
        latest = await run_in_threadpool(self.store.latest_per_conversation, caller_id)
        conversations = []
        for message in latest:
            partner_id = message.receiver_id if message.sender_id == caller_id else message.sender_id
            unread = await run_in_threadpool(self.store.unread_count, caller_id, partner_id)
            conversations.append({
                "partnerId": partner_id,
                "preview": truncate_preview(summarize(message)),
                "lastMessage": message.to_wire(),
                "unreadCount": unread,
            })
        return conversations

    async def get_bargains(
        self,
        caller_id: str,
        counterparty_id: str,
        product_id: Optional[str] = None,
    ) -> list[BargainSession]:
        """Current bargain sessions between caller and counterparty."""
        messages = await run_in_threadpool(self.store.list_between, caller_id, counterparty_id)
        sessions = fold_conversation(messages, caller_id, counterparty_id)
        if product_id is not None:
            sessions = [s for s in sessions if s.product_id == product_id]
        return sessions

    async def get_flags(self, caller_id: str, counterparty_id: str) -> BargainFlags:
        """Ended/active/accepted key sets for the caller's view of a conversation."""
        messages = await run_in_threadpool(self.store.list_between, caller_id, counterparty_id)
        return derive_flags(messages, caller_id, counterparty_id)

    async def _current_session(
        self,
        caller_id: str,
        counterparty_id: str,
        product_id: str,
        kind: MessageKind,
    ) -> BargainSession:
        sessions = await self.get_bargains(caller_id, counterparty_id, product_id)
        session = find_session(sessions, product_id)
        if session is None:
            raise BargainTransitionError(product_id, "idle", kind.value, "no bargain for this product")
        return session

    def _action_draft(
        self,
        session: BargainSession,
        caller_id: str,
        kind: MessageKind,
        text: str,
    ) -> MessageDraft:
        # Provisional roles are not written down; they would read as confirmed later
        claims = {}
        if session.roles_confirmed or kind != MessageKind.END_BARGAIN:
            claims = {"sellerId": session.seller_id, "buyerId": session.buyer_id}
        payload = format_negotiation_payload(
            session.product_id,
            session.last_price,
            productName=session.product_name,
            text=text,
            **claims,
        )
        return MessageDraft(
            sender_id=caller_id,
            receiver_id=session.counterparty_of(caller_id),
            text=payload,
            message_type=kind,
        )

    def _acting_session(
        self,
        session: BargainSession,
        caller_id: str,
        role: Optional[str],
        kind: MessageKind,
    ) -> BargainSession:
        """
        Session seen with the caller acting in `role`.

        Roles fixed by the history cannot be overridden; while they are
        still provisional an explicit role swaps buyer and seller on a copy.
        """
        current = session.role_of(caller_id)
        if role is None or role == current:
            return session
        if session.roles_confirmed:
            raise BargainTransitionError(
                session.product_id, session.state.value, kind.value,
                f"caller is the {current} in this bargain",
            )
        counterparty_id = session.counterparty_of(caller_id)
        if role == "seller":
            buyer_id, seller_id = counterparty_id, caller_id
        else:
            buyer_id, seller_id = caller_id, counterparty_id
        logger.info(f"Bargain {session.product_id}: {caller_id} acts as {role} before roles are confirmed")
        return session.model_copy(update={"buyer_id": buyer_id, "seller_id": seller_id})

    async def accept_offer(
        self,
        caller_id: str,
        counterparty_id: str,
        product_id: str,
        role: Optional[str] = None,
    ) -> ChatMessage:
        """
        Accept the last offer as the seller; sends sellerAccept.

        Buyers answer an offer by countering or declining. The accepted
        price is taken from the session's last offer.
        """
        kind = MessageKind.SELLER_ACCEPT
        session = await self._current_session(caller_id, counterparty_id, product_id, kind)
        session = self._acting_session(session, caller_id, role or "seller", kind)
        if session.role_of(caller_id) != "seller":
            raise BargainTransitionError(product_id, session.state.value, kind.value, "only the seller can accept")
        product = session.product_name or "product"
        text = f"Offer for {product} accepted at {format_price(session.last_price)}"
        return await self._submit(self._action_draft(session, caller_id, kind, text), caller_id, server_built=True)

    async def decline_offer(
        self,
        caller_id: str,
        counterparty_id: str,
        product_id: str,
        role: Optional[str] = None,
    ) -> ChatMessage:
        """Decline the last offer; sends sellerDecline or buyerDeclineResponse by the caller's role."""
        session = await self._current_session(caller_id, counterparty_id, product_id, MessageKind.SELLER_DECLINE)
        session = self._acting_session(session, caller_id, role, MessageKind.SELLER_DECLINE)
        if session.role_of(caller_id) == "seller":
            kind = MessageKind.SELLER_DECLINE
        else:
            kind = MessageKind.BUYER_DECLINE_RESPONSE
        product = session.product_name or "product"
        text = f"Offer for {product} declined"
        return await self._submit(self._action_draft(session, caller_id, kind, text), caller_id, server_built=True)

    async def end_bargain(self, caller_id: str, counterparty_id: str, product_id: str) -> ChatMessage:
        """End the bargain for a product."""
        session = await self._current_session(caller_id, counterparty_id, product_id, MessageKind.END_BARGAIN)
        product = session.product_name or "product"
        text = f"Bargain ended for {product}"
        draft = self._action_draft(session, caller_id, MessageKind.END_BARGAIN, text)
        return await self._submit(draft, caller_id, server_built=True)

    async def relay_typing(self, caller_id: str, receiver_id: str, is_typing: bool) -> None:
        """Forward a typing indicator; nobody listening is fine."""
        self.hub.publish(receiver_id, RoomEvent(
            event="typing",
            data={"senderId": caller_id, "isTyping": is_typing},
        ))


# Global service instance
chat_service = ChatService()
