"""
Message store.

WHAT: Durable append/list/status operations over the chat_messages table
WHY: Single writer of truth for history replay, receipts and bargain folding
HOW: SQLAlchemy sessions via get_db(); conditional UPDATEs keep status changes monotonic
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import and_, func, not_, or_, select, update

from ..core.config import settings
from ..core.database import get_db
from ..core.models import ChatMessage as ChatMessageRow
from ..models.message import (
    Attachment,
    BargainStatus,
    ChatMessage,
    DeliveryStatus,
    MessageDraft,
    MessageKind,
    is_negotiation_kind,
)
from ..utils.exceptions import MalformedPayloadError, MessageNotFoundError, ValidationError
from ..utils.logger import get_logger
from .bargain_machine import PRICE_KINDS
from .payload_codec import parse_negotiation_payload

logger = get_logger(__name__)


def _to_model(row: ChatMessageRow) -> ChatMessage:
    attachment = None
    if row.attachment_url:
        attachment = Attachment(url=row.attachment_url, type=row.attachment_type)
    return ChatMessage(
        message_id=row.message_id,
        sender_id=row.sender_id,
        receiver_id=row.receiver_id,
        text=row.text,
        attachment=attachment,
        message_type=row.message_type,
        status=row.status,
        proposed_price=row.proposed_price,
        bargain_status=row.bargain_status,
        temp_id=row.temp_id,
        created_at=row.created_at,
    )


def _pair_filter(user_a: str, user_b: str):
    return or_(
        and_(ChatMessageRow.sender_id == user_a, ChatMessageRow.receiver_id == user_b),
        and_(ChatMessageRow.sender_id == user_b, ChatMessageRow.receiver_id == user_a),
    )


def _not_hidden_from(user_id: str):
    """Exclude buyerAccept messages user_id sent (only the receiving buyer renders them)."""
    return not_(and_(
        ChatMessageRow.message_type == MessageKind.BUYER_ACCEPT,
        ChatMessageRow.sender_id == user_id,
    ))


class MessageStore:
    """
    Persist messages and serve history queries.

    All methods are blocking; async callers run them in a worker thread.
    """

    def __init__(self, session_factory=None):
        """
        Args:
            session_factory: Optional sessionmaker (defaults to the app's SessionLocal)
        """
        self.session_factory = session_factory

    def append(self, draft: MessageDraft) -> ChatMessage:
        """
        Validate and store a new message.

        Args:
            draft: Message as submitted; sender_id must already be resolved

        Returns:
            Stored message with server-assigned id, timestamp and status "sent"

        Raises:
            ValidationError: missing sender, self-addressed, empty, or oversized message
        """
        if not draft.sender_id:
            raise ValidationError(
                "Message sender is required",
                [{"field": "senderId", "error": "missing"}]
            )
        if draft.sender_id == draft.receiver_id:
            raise ValidationError(
                "Sender and receiver must be different users",
                [{"field": "receiverId", "error": "same as sender"}]
            )
        if not draft.has_content():
            raise ValidationError(
                "Message must have either text or an attachment URL",
                [{"field": "text", "error": "empty"}, {"field": "attachment.url", "error": "empty"}]
            )
        if draft.text and len(draft.text) > settings.MESSAGE_MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Message text exceeds {settings.MESSAGE_MAX_TEXT_LENGTH} characters",
                [{"field": "text", "error": "too long"}]
            )

        # Price and bargain status only mean something on a well-formed negotiation message
        product_id = proposed_price = bargain_status = None
        if is_negotiation_kind(draft.message_type):
            try:
                payload = parse_negotiation_payload(draft.text)
            except MalformedPayloadError as e:
                # Kept as inert text; the bargain fold skips it
                logger.warning(
                    f"Storing {draft.message_type.value} from {draft.sender_id} with malformed payload: "
                    f"{e.details['reason']}"
                )
            else:
                product_id = payload.product_id
                bargain_status = draft.bargain_status
                proposed_price = payload.price if draft.message_type in PRICE_KINDS else draft.proposed_price

        attachment_url = draft.attachment_url.strip() or None

        with get_db(self.session_factory) as db:
            row = ChatMessageRow(
                message_id=str(uuid4()),
                sender_id=draft.sender_id,
                receiver_id=draft.receiver_id,
                text=draft.text or None,
                attachment_url=attachment_url,
                attachment_type=draft.attachment.type if attachment_url else None,
                message_type=draft.message_type,
                status=DeliveryStatus.SENT,
                proposed_price=proposed_price,
                bargain_status=bargain_status,
                product_id=product_id,
                temp_id=draft.temp_id,
                created_at=datetime.utcnow(),
            )
            db.add(row)
            db.flush()
            stored = _to_model(row)

        logger.info(
            f"Stored message {stored.message_id} ({stored.message_type.value}) "
            f"{stored.sender_id} -> {stored.receiver_id}"
        )
        return stored

    def get(self, message_id: str) -> ChatMessage:
        """
        Fetch one message.

        Raises:
            MessageNotFoundError: no message with this id
        """
        with get_db(self.session_factory) as db:
            row = db.execute(
                select(ChatMessageRow).where(ChatMessageRow.message_id == message_id)
            ).scalar_one_or_none()
            if row is None:
                raise MessageNotFoundError(message_id)
            return _to_model(row)

    def list_between(self, user_a: str, user_b: str, limit: int | None = None) -> list[ChatMessage]:
        """
        All messages between two users, oldest first.

        Args:
            user_a: One participant
            user_b: The other participant
            limit: Optional window keeping only the most recent N messages

        Returns:
            Messages ordered by (created_at, insertion order) ascending
        """
        with get_db(self.session_factory) as db:
            query = select(ChatMessageRow).where(_pair_filter(user_a, user_b))
            if limit is not None:
                query = query.order_by(ChatMessageRow.created_at.desc(), ChatMessageRow.seq.desc()).limit(limit)
                rows = list(reversed(db.execute(query).scalars().all()))
            else:
                query = query.order_by(ChatMessageRow.created_at.asc(), ChatMessageRow.seq.asc())
                rows = db.execute(query).scalars().all()
            messages = [_to_model(row) for row in rows]

        logger.debug(f"Fetched {len(messages)} messages between {user_a} and {user_b}")
        return messages

    def _advance_status(
        self,
        message_ids: list[str],
        receiver_id: str,
        target: DeliveryStatus,
        allowed_from: tuple[DeliveryStatus, ...],
    ) -> list[ChatMessage]:
        """Move receiver-owned messages to `target`; return only the rows this call changed."""
        if not message_ids:
            return []

        changed: list[ChatMessage] = []
        with get_db(self.session_factory) as db:
            candidates = db.execute(
                select(ChatMessageRow.message_id).where(
                    ChatMessageRow.message_id.in_(set(message_ids)),
                    ChatMessageRow.receiver_id == receiver_id,
                    ChatMessageRow.status.in_(allowed_from),
                )
            ).scalars().all()

            for message_id in candidates:
                # Conditional update: a concurrent call that got there first leaves rowcount 0
                result = db.execute(
                    update(ChatMessageRow)
                    .where(
                        ChatMessageRow.message_id == message_id,
                        ChatMessageRow.status.in_(allowed_from),
                    )
                    .values(status=target)
                )
                if result.rowcount == 1:
                    row = db.execute(
                        select(ChatMessageRow).where(ChatMessageRow.message_id == message_id)
                    ).scalar_one()
                    changed.append(_to_model(row))

        return changed

    def mark_seen(self, message_ids: list[str], receiver_id: str) -> list[ChatMessage]:
        """
        Mark messages addressed to receiver_id as seen.

        Messages owned by another receiver, unknown ids and already-seen messages
        are skipped without error. "delivered" is not a prerequisite.

        Returns:
            Messages whose status changed in this call
        """
        changed = self._advance_status(
            message_ids,
            receiver_id,
            DeliveryStatus.SEEN,
            (DeliveryStatus.SENT, DeliveryStatus.DELIVERED),
        )
        logger.info(f"Marked {len(changed)}/{len(message_ids)} messages as seen for receiver {receiver_id}")
        return changed

    def mark_delivered(self, message_ids: list[str], receiver_id: str) -> list[ChatMessage]:
        """Mark "sent" messages addressed to receiver_id as delivered; returns changed messages."""
        changed = self._advance_status(
            message_ids,
            receiver_id,
            DeliveryStatus.DELIVERED,
            (DeliveryStatus.SENT,),
        )
        logger.debug(f"Marked {len(changed)} messages as delivered for receiver {receiver_id}")
        return changed

    def set_bargain_status(self, message_id: str, status: BargainStatus) -> ChatMessage:
        """
        Record how an offer was resolved.

        Raises:
            MessageNotFoundError: no message with this id
        """
        with get_db(self.session_factory) as db:
            row = db.execute(
                select(ChatMessageRow).where(ChatMessageRow.message_id == message_id)
            ).scalar_one_or_none()
            if row is None:
                raise MessageNotFoundError(message_id)
            row.bargain_status = status
            db.flush()
            updated = _to_model(row)

        logger.info(f"Offer {message_id} bargain status set to {status.value}")
        return updated

    def latest_per_conversation(self, user_id: str) -> list[ChatMessage]:
        """
        Most recent message of each conversation the user takes part in.

        Returns:
            One message per partner, newest conversation first
        """
        with get_db(self.session_factory) as db:
            rows = db.execute(
                select(ChatMessageRow)
                .where(
                    or_(ChatMessageRow.sender_id == user_id, ChatMessageRow.receiver_id == user_id),
                    _not_hidden_from(user_id),
                )
                .order_by(ChatMessageRow.created_at.desc(), ChatMessageRow.seq.desc())
            ).scalars().all()

            latest: dict[str, ChatMessage] = {}
            for row in rows:
                partner = row.receiver_id if row.sender_id == user_id else row.sender_id
                if partner not in latest:
                    latest[partner] = _to_model(row)

        return list(latest.values())

    def unread_count(self, user_id: str, sender_id: str | None = None) -> int:
        """
        Number of messages addressed to user_id not yet seen.

        Args:
            user_id: Receiver
            sender_id: Optionally count only messages from this sender
        """
        query = select(func.count(ChatMessageRow.seq)).where(
            ChatMessageRow.receiver_id == user_id,
            ChatMessageRow.status != DeliveryStatus.SEEN,
        )
        if sender_id is not None:
            query = query.where(ChatMessageRow.sender_id == sender_id)
        with get_db(self.session_factory) as db:
            return db.execute(query).scalar_one()
