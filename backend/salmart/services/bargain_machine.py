"""
Bargain state machine.

WHAT: Fold negotiation messages into per-(buyer, seller, product) session state
WHY: Offer/counter/accept/decline state is derived from the durable history, never stored
HOW: Pure functions over ordered ChatMessage lists; illegal steps skipped on replay, rejected on send
"""

from typing import Iterable, Optional

from ..models.bargain import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    BargainFlags,
    BargainSession,
    BargainState,
    NegotiationPayload,
)
from ..models.message import BargainStatus, ChatMessage, MessageKind, is_negotiation_kind
from ..utils.exceptions import BargainTransitionError
from ..utils.logger import get_logger
from .payload_codec import try_parse_payload

logger = get_logger(__name__)


OPENING_KINDS = frozenset({MessageKind.BARGAIN_START, MessageKind.OFFER})
PRICE_KINDS = frozenset({MessageKind.OFFER, MessageKind.COUNTER_OFFER})
ACCEPT_KINDS = frozenset({MessageKind.BUYER_ACCEPT, MessageKind.SELLER_ACCEPT})
DECLINE_KINDS = frozenset({MessageKind.SELLER_DECLINE, MessageKind.BUYER_DECLINE_RESPONSE})

# Role each answering kind must be sent by. buyerAccept is the seller's
# acceptance addressed to the buyer, so both accept kinds come from the seller.
ANSWER_ROLES = {
    MessageKind.BUYER_ACCEPT: "seller",
    MessageKind.SELLER_ACCEPT: "seller",
    MessageKind.SELLER_DECLINE: "seller",
    MessageKind.BUYER_DECLINE_RESPONSE: "buyer",
}

# Bargain status recorded on the answered offer
RESOLUTION_STATUS = {
    MessageKind.BUYER_ACCEPT: BargainStatus.ACCEPTED,
    MessageKind.SELLER_ACCEPT: BargainStatus.ACCEPTED,
    MessageKind.SELLER_DECLINE: BargainStatus.DECLINED,
    MessageKind.BUYER_DECLINE_RESPONSE: BargainStatus.DECLINED,
}

_SELLER_SENT = frozenset({
    MessageKind.SELLER_ACCEPT,
    MessageKind.BUYER_ACCEPT,
    MessageKind.SELLER_DECLINE,
})
_BUYER_SENT = frozenset({MessageKind.BUYER_DECLINE_RESPONSE, MessageKind.BARGAIN_START})


def _parsed_negotiation(messages: Iterable[ChatMessage]) -> list[tuple[ChatMessage, NegotiationPayload]]:
    """Well-formed negotiation messages with their payloads; malformed ones are logged and dropped."""
    parsed = []
    for message in messages:
        if not is_negotiation_kind(message.message_type):
            continue
        payload = try_parse_payload(message)
        if payload is not None:
            parsed.append((message, payload))
    return parsed


def _roles_from(
    parsed: list[tuple[ChatMessage, NegotiationPayload]],
    user_a: str,
    user_b: str,
) -> tuple[str, str, bool]:
    """Pick (buyer_id, seller_id, confirmed) from the first decisive piece of evidence."""
    parties = {user_a, user_b}

    def other(user_id: str) -> str:
        return user_b if user_id == user_a else user_a

    for message, payload in parsed:
        if payload.seller_id in parties:
            return other(payload.seller_id), payload.seller_id, True
        if payload.buyer_id in parties:
            return payload.buyer_id, other(payload.buyer_id), True
        if message.message_type in _SELLER_SENT and message.sender_id in parties:
            return other(message.sender_id), message.sender_id, True
        if message.message_type in _BUYER_SENT and message.sender_id in parties:
            return message.sender_id, other(message.sender_id), True

    # No evidence: whoever opened the thread is taken to be the buyer
    if parsed and parsed[0][0].sender_id in parties:
        opener = parsed[0][0].sender_id
        return opener, other(opener), False
    return user_a, user_b, False


def _product_thread(
    messages: Iterable[ChatMessage],
    user_a: str,
    user_b: str,
    product_id: str,
) -> list[tuple[ChatMessage, NegotiationPayload]]:
    return [
        (message, payload)
        for message, payload in _parsed_negotiation(messages)
        if payload.product_id == product_id and message.involves(user_a, user_b)
    ]


def resolve_roles(
    messages: Iterable[ChatMessage],
    user_a: str,
    user_b: str,
    product_id: str,
) -> tuple[str, str]:
    """
    Determine who is buyer and who is seller for one product thread.

    Evidence, first match wins in message order: payload sellerId/buyerId (only
    server-built action messages carry them), then kinds only one role sends
    (sellerAccept/buyerAccept/sellerDecline by the seller; buyerDeclineResponse/
    bargainStart by the buyer). Without any evidence the sender of the first
    negotiation message is taken to be the buyer, provisionally.

    Returns:
        (buyer_id, seller_id)
    """
    buyer_id, seller_id, _ = _roles_from(_product_thread(messages, user_a, user_b, product_id), user_a, user_b)
    return buyer_id, seller_id


def _illegal(session: BargainSession, kind: MessageKind, reason: str) -> BargainTransitionError:
    return BargainTransitionError(session.product_id, session.state.value, kind.value, reason)


def apply_message(
    session: BargainSession,
    message: ChatMessage,
    payload: NegotiationPayload,
) -> BargainSession:
    """
    Compute the session after one negotiation message.

    Args:
        session: Current session state
        message: Negotiation message (the sender is read from it, never from the payload)
        payload: Parsed payload of the message

    Returns:
        New BargainSession; the input is not modified

    Raises:
        BargainTransitionError: the message is not a legal next step
    """
    kind = message.message_type
    sender = message.sender_id
    role = session.role_of(sender)
    state = session.state

    if role is None:
        raise _illegal(session, kind, f"{sender} is not a party to this bargain")

    base = {
        "updated_at": message.created_at,
        "product_name": payload.product_name or session.product_name,
    }

    opens_session = kind == MessageKind.BARGAIN_START or (
        kind == MessageKind.OFFER and state not in ACTIVE_STATES
    )

    if opens_session:
        if state in ACTIVE_STATES:
            raise _illegal(session, kind, "a bargain is already in progress")
        if kind == MessageKind.BARGAIN_START and role != "buyer":
            raise _illegal(session, kind, "only the buyer can start a bargain")
        if kind == MessageKind.OFFER and payload.price is None:
            raise _illegal(session, kind, "offer carries no price")
        # bargainStart carries the asking price as context; nobody has offered yet
        offeror = sender if kind == MessageKind.OFFER else None
        return session.model_copy(update={
            **base,
            "state": BargainState.OFFERED,
            "session_id": f"{session.product_id}:{message.message_id}",
            "session_number": session.session_number + 1,
            "last_offeror_id": offeror,
            "last_offer_message_id": message.message_id if offeror else None,
            "last_price": payload.price,
            "frozen_price": None,
            "resolved_by_message_id": None,
            "message_ids": [message.message_id],
        })

    if kind == MessageKind.END_BARGAIN:
        if state == BargainState.IDLE:
            raise _illegal(session, kind, "no bargain to end")
        return session.model_copy(update={
            **base,
            "state": BargainState.ENDED,
            "resolved_by_message_id": message.message_id,
            "message_ids": session.message_ids + [message.message_id],
        })

    if state not in ACTIVE_STATES:
        raise _illegal(session, kind, "no active bargain")

    if kind in PRICE_KINDS:
        # Responding offer or counter-offer
        if session.last_offeror_id is None and kind == MessageKind.COUNTER_OFFER:
            raise _illegal(session, kind, "no offer to counter")
        if sender == session.last_offeror_id:
            raise _illegal(session, kind, "waiting for the other party to respond")
        if payload.price is None:
            raise _illegal(session, kind, "offer carries no price")
        next_state = BargainState.OFFERED if session.last_offeror_id is None else BargainState.COUNTERED
        return session.model_copy(update={
            **base,
            "state": next_state,
            "last_offeror_id": sender,
            "last_offer_message_id": message.message_id,
            "last_price": payload.price,
            "message_ids": session.message_ids + [message.message_id],
        })

    if kind in ACCEPT_KINDS or kind in DECLINE_KINDS:
        if session.last_offeror_id is None:
            raise _illegal(session, kind, "no offer to answer")
        if sender == session.last_offeror_id:
            raise _illegal(session, kind, "cannot answer your own offer")
        if role != ANSWER_ROLES[kind]:
            raise _illegal(session, kind, f"only the {ANSWER_ROLES[kind]} can send {kind.value}")
        return session.model_copy(update={
            **base,
            "state": BargainState.ACCEPTED if kind in ACCEPT_KINDS else BargainState.DECLINED,
            # Price comes from the answered offer, whatever the answer carries
            "frozen_price": session.last_price,
            "resolved_by_message_id": message.message_id,
            "message_ids": session.message_ids + [message.message_id],
        })

    raise _illegal(session, kind, "not a negotiation step")


def fold_bargain(
    messages: Iterable[ChatMessage],
    buyer_id: str,
    seller_id: str,
    product_id: str,
) -> BargainSession:
    """
    Replay a conversation into the current session for one product.

    Malformed payloads and illegal steps are logged and skipped, so a stale or
    misbehaving client cannot corrupt the derived state.

    Args:
        messages: Conversation history, oldest first
        buyer_id: Buyer identity
        seller_id: Seller identity
        product_id: Listing identifier

    Returns:
        BargainSession (state idle if no negotiation happened)
    """
    session = BargainSession(buyer_id=buyer_id, seller_id=seller_id, product_id=product_id)

    for message, payload in _parsed_negotiation(messages):
        if payload.product_id != product_id or not message.involves(buyer_id, seller_id):
            continue
        try:
            session = apply_message(session, message, payload)
        except BargainTransitionError as e:
            logger.warning(f"Skipping message {message.message_id} in bargain fold: {e.message}")

    return session


def fold_conversation(messages: list[ChatMessage], user_a: str, user_b: str) -> list[BargainSession]:
    """
    Fold every product negotiated between two users.

    Returns:
        One session per product, in order of first negotiation message
    """
    parsed = [
        (message, payload)
        for message, payload in _parsed_negotiation(messages)
        if message.involves(user_a, user_b)
    ]

    product_ids: list[str] = []
    for _, payload in parsed:
        if payload.product_id not in product_ids:
            product_ids.append(payload.product_id)

    sessions = []
    for product_id in product_ids:
        thread = [(m, p) for m, p in parsed if p.product_id == product_id]
        buyer_id, seller_id, confirmed = _roles_from(thread, user_a, user_b)
        session = fold_bargain(messages, buyer_id, seller_id, product_id)
        sessions.append(session.model_copy(update={"roles_confirmed": confirmed}))
    return sessions


def validate_transition(
    history: list[ChatMessage],
    pending: ChatMessage,
    payload: NegotiationPayload,
) -> BargainSession:
    """
    Check that a message about to be sent is a legal next step.

    The pending message takes part in role resolution, so an answering kind
    identifies its own sender's role.

    Args:
        history: Stored conversation, oldest first
        pending: Message as it would be stored
        payload: Its parsed payload

    Returns:
        The session as it will be after the message is stored

    Raises:
        BargainTransitionError: illegal step
    """
    user_a, user_b = pending.sender_id, pending.receiver_id
    buyer_id, seller_id = resolve_roles(history + [pending], user_a, user_b, payload.product_id)
    session = fold_bargain(history, buyer_id, seller_id, payload.product_id)
    return apply_message(session, pending, payload)


def is_visible_to(message: ChatMessage, viewer_id: str) -> bool:
    """buyerAccept is rendered only by its receiver, the buyer; everything else by both parties."""
    return message.message_type != MessageKind.BUYER_ACCEPT or message.receiver_id == viewer_id


def negotiation_view(messages: list[ChatMessage], viewer_id: str) -> list[ChatMessage]:
    """
    Messages as the viewer may render them.

    The seller who sent a buyerAccept never sees it. Malformed negotiation
    messages stay in the list as plain text.
    """
    return [message for message in messages if is_visible_to(message, viewer_id)]


def derive_flags(messages: list[ChatMessage], viewer_id: str, counterparty_id: str) -> BargainFlags:
    """
    Client-side flag sets for one conversation, keyed "<productId>-<counterpartyId>".

    A declined bargain counts as ended.
    """
    flags = BargainFlags()
    for session in fold_conversation(messages, viewer_id, counterparty_id):
        key = f"{session.product_id}-{counterparty_id}"
        if session.state in ACTIVE_STATES:
            flags.active.add(key)
        elif session.state == BargainState.ACCEPTED:
            flags.accepted.add(key)
        elif session.state in TERMINAL_STATES:
            flags.ended.add(key)
    return flags


def find_session(
    sessions: list[BargainSession],
    product_id: str,
) -> Optional[BargainSession]:
    """Session for a product, or None."""
    for session in sessions:
        if session.product_id == product_id:
            return session
    return None
