"""
Unit tests for the message store.

WHAT: Test append validation, history order, status transitions and queries
WHY: The store is the system of record for receipts and bargain replay
HOW: MessageStore over an in-memory SQLite database
"""

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from datetime import datetime

from salmart.core.database import get_db
from salmart.core.models import ChatMessage as ChatMessageRow
from salmart.models.message import (
    Attachment,
    AttachmentType,
    BargainStatus,
    DeliveryStatus,
    MessageDraft,
    MessageKind,
)
from salmart.utils.exceptions import MessageNotFoundError, ValidationError
from tests.fixtures.chat_data import BUYER, SELLER, draft


def _text(sender, receiver, text="hello"):
    return MessageDraft(sender_id=sender, receiver_id=receiver, text=text)


@pytest.mark.store
@pytest.mark.unit
class TestAppend:
    """Test message construction rules."""

    def test_append_assigns_identity(self, store):
        message = store.append(_text(BUYER, SELLER))

        assert message.message_id
        assert message.status == DeliveryStatus.SENT
        assert message.created_at is not None
        assert message.message_type == MessageKind.TEXT

    def test_empty_message_rejected(self, store):
        """Empty text and empty attachment URL is a validation error, nothing stored."""
        empty = MessageDraft(sender_id=BUYER, receiver_id=SELLER, text="", attachment=Attachment(url=""))

        with pytest.raises(ValidationError) as exc_info:
            store.append(empty)

        assert exc_info.value.code == "VALIDATION_ERROR"
        assert store.list_between(BUYER, SELLER) == []

    def test_whitespace_text_rejected(self, store):
        with pytest.raises(ValidationError):
            store.append(_text(BUYER, SELLER, "   "))

    def test_attachment_only_accepted(self, store):
        message = store.append(MessageDraft(
            sender_id=BUYER,
            receiver_id=SELLER,
            attachment=Attachment(url="http://img/1.png", type=AttachmentType.IMAGE),
            message_type=MessageKind.IMAGE,
        ))

        assert message.text is None
        assert message.attachment.url == "http://img/1.png"
        assert message.attachment.type == AttachmentType.IMAGE

    def test_self_addressed_rejected(self, store):
        with pytest.raises(ValidationError):
            store.append(_text(BUYER, BUYER))

    def test_oversized_text_rejected(self, store):
        with pytest.raises(ValidationError):
            store.append(_text(BUYER, SELLER, "x" * 5001))

    def test_malformed_negotiation_still_stored(self, store):
        message = store.append(MessageDraft(
            sender_id=BUYER,
            receiver_id=SELLER,
            text="not-json",
            message_type=MessageKind.COUNTER_OFFER,
        ))

        assert message.text == "not-json"
        assert store.get(message.message_id).message_type == MessageKind.COUNTER_OFFER

    def test_check_constraint_guards_raw_inserts(self, session_factory):
        with pytest.raises(IntegrityError):
            with get_db(session_factory) as db:
                db.add(ChatMessageRow(sender_id=BUYER, receiver_id=SELLER, text="", attachment_url=None))

    def test_blank_attachment_url_dropped(self, store):
        message = store.append(MessageDraft(
            sender_id=BUYER,
            receiver_id=SELLER,
            text="see photo",
            attachment=Attachment(url="   ", type=AttachmentType.IMAGE),
        ))

        assert message.attachment is None
        assert store.get(message.message_id).attachment is None

    def test_temp_id_kept(self, store):
        message = store.append(MessageDraft(sender_id=BUYER, receiver_id=SELLER, text="hi", temp_id="temp-9"))

        assert store.list_between(BUYER, SELLER)[0].temp_id == "temp-9"
        assert message.to_wire()["tempId"] == "temp-9"


@pytest.mark.store
@pytest.mark.unit
class TestBargainFields:
    """Test proposedPrice/bargainStatus normalization on append."""

    def test_plain_text_drops_bargain_fields(self, store):
        message = store.append(MessageDraft(
            sender_id=BUYER,
            receiver_id=SELLER,
            text="hi",
            bargain_status=BargainStatus.ACCEPTED,
            proposed_price=1,
        ))

        assert message.bargain_status is None
        assert message.proposed_price is None

    def test_malformed_negotiation_drops_bargain_fields(self, store):
        message = store.append(MessageDraft(
            sender_id=BUYER,
            receiver_id=SELLER,
            text="not-json",
            message_type=MessageKind.OFFER,
            bargain_status=BargainStatus.PENDING,
            proposed_price=10,
        ))

        assert message.bargain_status is None
        assert message.proposed_price is None

    def test_offer_price_comes_from_payload(self, store):
        offer = draft(SELLER, BUYER, MessageKind.COUNTER_OFFER, price=4500)
        offer = offer.model_copy(update={"proposed_price": 1})

        assert store.append(offer).proposed_price == 4500


@pytest.mark.store
@pytest.mark.unit
class TestListBetween:
    """Test conversation history queries."""

    def test_both_directions_in_order(self, store):
        first = store.append(_text(BUYER, SELLER, "one"))
        second = store.append(_text(SELLER, BUYER, "two"))
        third = store.append(_text(BUYER, SELLER, "three"))
        store.append(_text(BUYER, "someone-else", "elsewhere"))

        history = store.list_between(SELLER, BUYER)

        assert [m.message_id for m in history] == [first.message_id, second.message_id, third.message_id]

    def test_equal_timestamps_keep_insertion_order(self, store, session_factory):
        ids = [store.append(_text(BUYER, SELLER, str(i))).message_id for i in range(4)]
        same_time = datetime(2026, 1, 1, 9, 0, 0)
        with get_db(session_factory) as db:
            db.execute(update(ChatMessageRow).values(created_at=same_time))

        assert [m.message_id for m in store.list_between(BUYER, SELLER)] == ids

    def test_limit_keeps_most_recent_ascending(self, store):
        ids = [store.append(_text(BUYER, SELLER, str(i))).message_id for i in range(5)]

        window = store.list_between(BUYER, SELLER, limit=2)

        assert [m.message_id for m in window] == ids[-2:]


@pytest.mark.store
@pytest.mark.unit
class TestStatusTransitions:
    """Test delivered/seen transitions."""

    def test_mark_seen_is_idempotent(self, store):
        """Second call changes nothing and reports nothing."""
        message = store.append(_text(BUYER, SELLER))

        first = store.mark_seen([message.message_id], SELLER)
        second = store.mark_seen([message.message_id], SELLER)

        assert [m.message_id for m in first] == [message.message_id]
        assert first[0].status == DeliveryStatus.SEEN
        assert second == []

    def test_seen_directly_from_sent(self, store):
        message = store.append(_text(BUYER, SELLER))

        changed = store.mark_seen([message.message_id], SELLER)

        assert changed[0].status == DeliveryStatus.SEEN

    def test_mark_seen_skips_other_receivers(self, store):
        mine = store.append(_text(BUYER, SELLER))
        theirs = store.append(_text(SELLER, BUYER))

        changed = store.mark_seen([mine.message_id, theirs.message_id, "unknown"], SELLER)

        assert [m.message_id for m in changed] == [mine.message_id]
        assert store.get(theirs.message_id).status == DeliveryStatus.SENT

    def test_delivered_never_downgrades_seen(self, store):
        message = store.append(_text(BUYER, SELLER))
        store.mark_seen([message.message_id], SELLER)

        assert store.mark_delivered([message.message_id], SELLER) == []
        assert store.get(message.message_id).status == DeliveryStatus.SEEN

    def test_delivered_then_seen(self, store):
        message = store.append(_text(BUYER, SELLER))

        delivered = store.mark_delivered([message.message_id], SELLER)
        seen = store.mark_seen([message.message_id], SELLER)

        assert delivered[0].status == DeliveryStatus.DELIVERED
        assert seen[0].status == DeliveryStatus.SEEN


@pytest.mark.store
@pytest.mark.unit
class TestQueries:
    """Test lookups, bargain status and inbox queries."""

    def test_get_unknown_raises(self, store):
        with pytest.raises(MessageNotFoundError):
            store.get("missing")

    def test_set_bargain_status(self, store):
        offer = store.append(draft(SELLER, BUYER, MessageKind.OFFER, price=5000))

        updated = store.set_bargain_status(offer.message_id, BargainStatus.ACCEPTED)

        assert updated.bargain_status == BargainStatus.ACCEPTED
        with pytest.raises(MessageNotFoundError):
            store.set_bargain_status("missing", BargainStatus.DECLINED)

    def test_unread_count(self, store):
        a = store.append(_text(BUYER, SELLER))
        store.append(_text(BUYER, SELLER))
        store.append(_text("buyer-2", SELLER))
        store.append(_text(SELLER, BUYER))

        assert store.unread_count(SELLER) == 3
        assert store.unread_count(SELLER, sender_id=BUYER) == 2

        store.mark_seen([a.message_id], SELLER)
        assert store.unread_count(SELLER) == 2

    def test_buyer_accept_counted_for_receiving_buyer(self, store):
        store.append(draft(SELLER, BUYER, MessageKind.BUYER_ACCEPT, price=4500))

        assert store.unread_count(BUYER) == 1

    def test_latest_skips_buyer_accept_for_its_sender(self, store):
        text = store.append(_text(BUYER, SELLER, "deal?"))
        accept = store.append(draft(SELLER, BUYER, MessageKind.BUYER_ACCEPT, price=4500))

        assert [m.message_id for m in store.latest_per_conversation(SELLER)] == [text.message_id]
        assert [m.message_id for m in store.latest_per_conversation(BUYER)] == [accept.message_id]

    def test_latest_per_conversation(self, store):
        store.append(_text(BUYER, SELLER, "old"))
        latest_buyer = store.append(_text(SELLER, BUYER, "newer"))
        other = store.append(_text("buyer-2", SELLER, "hi"))

        latest = store.latest_per_conversation(SELLER)

        assert [m.message_id for m in latest] == [other.message_id, latest_buyer.message_id]
