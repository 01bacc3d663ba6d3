"""
Negotiation payload parsing and display formatting.

WHAT: Decode the structured JSON carried in negotiation messages; render previews
WHY: Bargain state depends on the payload; a bad payload must degrade, not break chat
HOW: json + Pydantic validation raising MalformedPayloadError, plus text summaries
"""

import json
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..core.config import settings
from ..models.bargain import NegotiationPayload
from ..models.message import ChatMessage, MessageKind, is_negotiation_kind
from ..utils.exceptions import MalformedPayloadError
from ..utils.logger import get_logger

logger = get_logger(__name__)


def parse_negotiation_payload(text: str | None, message_id: str | None = None) -> NegotiationPayload:
    """
    Parse the structured payload of a negotiation-kind message.

    Expected shape: {"productId": "P1", "price": 4500, ...context}
    The legacy key "offer" is accepted as the price.

    Args:
        text: Raw message text
        message_id: Optional id, for error details

    Returns:
        NegotiationPayload

    Raises:
        MalformedPayloadError: text is empty, not JSON, not an object, or lacks productId
    """
    if not text or not text.strip():
        raise MalformedPayloadError("empty payload", message_id)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"invalid JSON ({e.msg})", message_id) from e

    if not isinstance(data, dict):
        raise MalformedPayloadError("payload is not a JSON object", message_id)

    if data.get("price") is None and data.get("offer") is not None:
        data = {**data, "price": data["offer"]}

    try:
        return NegotiationPayload.model_validate(data)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedPayloadError(f"invalid fields: {fields}", message_id) from e


def try_parse_payload(message: ChatMessage) -> NegotiationPayload | None:
    """Parse a stored message's payload, logging and returning None if malformed."""
    try:
        return parse_negotiation_payload(message.text, message.message_id)
    except MalformedPayloadError as e:
        logger.warning(
            f"Excluding message {message.message_id} ({message.message_type.value}) "
            f"from bargain state: {e.details['reason']}"
        )
        return None


def format_negotiation_payload(product_id: str, price: float | None = None, **context: Any) -> str:
    """
    Serialize a negotiation payload for a message's text field.

    Args:
        product_id: Listing identifier
        price: Proposed or frozen price
        **context: productName, image, text, sellerId, ... (None values dropped)

    Returns:
        JSON string that round-trips through parse_negotiation_payload
    """
    payload: dict[str, Any] = {"productId": product_id}
    if price is not None:
        payload["price"] = price
    payload.update({key: value for key, value in context.items() if value is not None})
    return json.dumps(payload)


ROLE_CLAIM_KEYS = ("sellerId", "buyerId")


def strip_role_claims(text: str) -> str:
    """
    Remove sellerId/buyerId from a client-written payload.

    Roles are derived from message order; only payloads the server builds for
    bargain actions may name them. Text that is not a JSON object is returned
    unchanged (it is stored as inert text anyway).
    """
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return text
    if not isinstance(data, dict) or not any(key in data for key in ROLE_CLAIM_KEYS):
        return text
    return json.dumps({key: value for key, value in data.items() if key not in ROLE_CLAIM_KEYS})


def format_price(price: float | None) -> str:
    """Format a price like the marketplace UI: ₦5,000 or ₦4,500.50."""
    if price is None:
        return f"{settings.CURRENCY_SYMBOL}0"
    if float(price).is_integer():
        return f"{settings.CURRENCY_SYMBOL}{int(price):,}"
    return f"{settings.CURRENCY_SYMBOL}{price:,.2f}"


def display_text(message: ChatMessage) -> str:
    """
    Text a client should render for a message.

    Negotiation messages show their embedded text (or a summary); malformed ones
    fall back to the raw text as inert plain text. Plain messages holding a JSON
    product preview show its "text" field.
    """
    raw = message.text or ""

    if is_negotiation_kind(message.message_type):
        try:
            payload = parse_negotiation_payload(raw, message.message_id)
        except MalformedPayloadError:
            return raw
        return payload.text or summarize(message, payload)

    if raw.startswith("{"):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        if isinstance(parsed, dict):
            return parsed.get("text") or parsed.get("content") or parsed.get("message") or raw
    return raw


def summarize(message: ChatMessage, payload: NegotiationPayload | None = None) -> str:
    """
    One-line preview used by the conversation list and notifications.

    Args:
        message: Stored message
        payload: Pre-parsed payload (parsed here if omitted)

    Returns:
        Human-readable summary
    """
    kind = message.message_type
    if not is_negotiation_kind(kind):
        if kind == MessageKind.IMAGE and not message.text:
            return "Photo"
        if kind == MessageKind.FILE and not message.text:
            return "File"
        return display_text(message) or "No message"

    if payload is None:
        try:
            payload = parse_negotiation_payload(message.text, message.message_id)
        except MalformedPayloadError:
            return message.text or "System notification"

    product = payload.product_name or "product"
    price = payload.price if payload.price is not None else message.proposed_price

    if kind == MessageKind.BARGAIN_START:
        return "Bargain started"
    if kind == MessageKind.END_BARGAIN:
        return f"Bargain ended for {product}" if payload.product_name else "Bargain ended"
    if kind == MessageKind.BUYER_ACCEPT:
        return f"Your offer for {product} was accepted at {format_price(price)}"
    if kind == MessageKind.SELLER_ACCEPT:
        return f"Offer for {product} accepted by seller"
    if kind == MessageKind.SELLER_DECLINE:
        return f"Offer for {product} declined by seller"
    if kind == MessageKind.BUYER_DECLINE_RESPONSE:
        return f"Offer for {product} declined by buyer"
    if kind == MessageKind.OFFER:
        return f"New offer for {product} at {format_price(price)}"
    return f"Counter-offer for {product} at {format_price(price)}"


def truncate_preview(text: str, max_length: int | None = None) -> str:
    """Shorten notification text, ending with '...' when cut."""
    limit = max_length or settings.NOTIFICATION_PREVIEW_LENGTH
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
