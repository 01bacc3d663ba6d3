"""
Tests for negotiation payload parsing and previews.

WHAT: Test payload decoding, degradation of malformed text, preview strings
WHY: Bargain state depends on payloads; bad payloads must never break chat
HOW: Direct calls with well-formed and malformed inputs
"""

import pytest

from salmart.models.message import ChatMessage, MessageKind
from salmart.services.payload_codec import (
    display_text,
    format_negotiation_payload,
    format_price,
    parse_negotiation_payload,
    strip_role_claims,
    summarize,
    truncate_preview,
    try_parse_payload,
)
from salmart.utils.exceptions import MalformedPayloadError


def _message(kind: MessageKind, text: str) -> ChatMessage:
    return ChatMessage(message_id="m1", sender_id="a", receiver_id="b", text=text, message_type=kind)


@pytest.mark.bargain
@pytest.mark.unit
class TestParseNegotiationPayload:
    """Test structured payload decoding."""

    def test_parses_product_and_price(self):
        payload = parse_negotiation_payload('{"productId": "P1", "price": 5000, "productName": "Lamp"}')

        assert payload.product_id == "P1"
        assert payload.price == 5000
        assert payload.product_name == "Lamp"

    def test_legacy_offer_key_is_price(self):
        payload = parse_negotiation_payload('{"productId": "P1", "offer": 4500}')
        assert payload.price == 4500

    def test_numeric_product_id_coerced(self):
        payload = parse_negotiation_payload('{"productId": 42, "price": 10}')
        assert payload.product_id == "42"

    def test_unknown_keys_kept(self):
        payload = parse_negotiation_payload('{"productId": "P1", "price": 1, "color": "red"}')
        assert payload.model_extra["color"] == "red"

    @pytest.mark.parametrize("text", ["not-json", "", "   ", "[1, 2]", '{"price": 10}', '{"productId": "P1", "price": -5}'])
    def test_malformed_payloads_raise(self, text):
        with pytest.raises(MalformedPayloadError) as exc_info:
            parse_negotiation_payload(text, "m9")
        assert exc_info.value.details["message_id"] == "m9"

    def test_try_parse_returns_none_for_malformed(self):
        assert try_parse_payload(_message(MessageKind.COUNTER_OFFER, "not-json")) is None

    def test_format_drops_none_context(self):
        text = format_negotiation_payload("P1", 4500, productName="Lamp", image=None)
        payload = parse_negotiation_payload(text)

        assert payload.price == 4500
        assert payload.image is None
        assert "image" not in text

    def test_strip_role_claims(self):
        text = format_negotiation_payload("P1", 4500, sellerId="buyer-1", buyerId="seller-1", productName="Lamp")

        payload = parse_negotiation_payload(strip_role_claims(text))

        assert (payload.seller_id, payload.buyer_id) == (None, None)
        assert (payload.product_id, payload.price, payload.product_name) == ("P1", 4500, "Lamp")

    @pytest.mark.parametrize("text", ["not-json", "[1]", '{"productId": "P1", "price": 10}'])
    def test_strip_role_claims_leaves_other_text_alone(self, text):
        assert strip_role_claims(text) == text


@pytest.mark.bargain
@pytest.mark.unit
class TestPreviews:
    """Test display text and one-line summaries."""

    def test_format_price(self):
        assert format_price(5000) == "₦5,000"
        assert format_price(4500.5) == "₦4,500.50"

    def test_malformed_negotiation_renders_raw_text(self):
        assert display_text(_message(MessageKind.COUNTER_OFFER, "not-json")) == "not-json"

    def test_negotiation_embedded_text_shown(self):
        text = format_negotiation_payload("P1", 5000, text="My offer is ₦5,000")
        assert display_text(_message(MessageKind.OFFER, text)) == "My offer is ₦5,000"

    def test_plain_json_preview_shows_text_field(self):
        message = _message(MessageKind.TEXT, '{"text": "Is this available?", "image": "http://img/1.png"}')
        assert display_text(message) == "Is this available?"

    def test_offer_summary(self):
        text = format_negotiation_payload("P1", 5000, productName="Lamp")
        assert summarize(_message(MessageKind.OFFER, text)) == "New offer for Lamp at ₦5,000"

    def test_counter_offer_summary(self):
        text = format_negotiation_payload("P1", 4500, productName="Lamp")
        assert summarize(_message(MessageKind.COUNTER_OFFER, text)) == "Counter-offer for Lamp at ₦4,500"

    def test_accept_and_decline_summaries(self):
        text = format_negotiation_payload("P1", 4500, productName="Lamp")

        assert summarize(_message(MessageKind.SELLER_ACCEPT, text)) == "Offer for Lamp accepted by seller"
        assert summarize(_message(MessageKind.BUYER_DECLINE_RESPONSE, text)) == "Offer for Lamp declined by buyer"

    def test_buyer_accept_summary_addresses_buyer(self):
        text = format_negotiation_payload("P1", 4500, productName="Lamp")
        assert summarize(_message(MessageKind.BUYER_ACCEPT, text)) == "Your offer for Lamp was accepted at ₦4,500"

    def test_bargain_start_summary(self):
        text = format_negotiation_payload("P1", 6000)
        assert summarize(_message(MessageKind.BARGAIN_START, text)) == "Bargain started"

    def test_image_without_text_is_photo(self):
        message = ChatMessage(
            message_id="m1", sender_id="a", receiver_id="b",
            attachment={"url": "http://img/1.png", "type": "image"},
            message_type=MessageKind.IMAGE,
        )
        assert summarize(message) == "Photo"

    def test_truncate_preview(self):
        long_text = "x" * 100

        assert truncate_preview("short") == "short"
        assert truncate_preview(long_text) == "x" * 77 + "..."
        assert len(truncate_preview(long_text)) == 80
