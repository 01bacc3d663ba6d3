"""
Integration tests for the chat REST API.

WHAT: Test history, send, receipts, conversations, badges, bargains and error shapes
WHY: Ensure API contract compliance and error handling
HOW: FastAPI TestClient with the chat service dependency pointed at a test database
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from salmart.api.deps import get_chat_service
from salmart.main import app
from salmart.models.message import MessageKind
from tests.fixtures.chat_data import BUYER, SELLER, negotiation_text


def _auth(user_id):
    return {"Authorization": f"Bearer {user_id}"}


@pytest.fixture
def client(service):
    """TestClient whose endpoints share the test service."""
    app.dependency_overrides[get_chat_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _send(client, sender, receiver, text="hello", kind=MessageKind.TEXT, **extra):
    body = {"receiverId": receiver, "text": text, "messageType": kind.value, **extra}
    return client.post("/api/v1/messages", json=body, headers=_auth(sender))


@pytest.mark.integration
class TestStatus:
    """Test health endpoint."""

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] in ("healthy", "degraded")
        assert "database" in data["components"]
        assert data["components"]["rooms"]["active"] == 0

    def test_health_degraded_when_database_down(self, client):
        with patch("salmart.api.v1.endpoints.status.ping_database") as mock_db:
            mock_db.return_value = {"available": False, "url": "sqlite:///./test.db", "error": "locked"}

            response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["database"]["available"] is False


@pytest.mark.integration
class TestMessages:
    """Test message endpoints."""

    def test_send_and_history(self, client):
        response = _send(client, BUYER, SELLER, "Is this available?", tempId="temp-1")

        assert response.status_code == 201
        data = response.json()
        assert data["tempId"] == "temp-1"
        assert data["message"]["senderId"] == BUYER
        assert data["message"]["status"] == "sent"

        history = client.get(
            "/api/v1/messages",
            params={"user1": SELLER, "user2": BUYER},
            headers=_auth(SELLER),
        )
        assert history.status_code == 200
        body = history.json()
        assert body["count"] == 1
        assert body["messages"][0]["id"] == data["message"]["id"]
        assert body["flags"] == {"ended": [], "active": [], "accepted": []}

    def test_missing_token_is_401(self, client):
        response = client.get("/api/v1/messages", params={"user1": BUYER, "user2": SELLER})

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    def test_token_query_parameter_accepted(self, client):
        response = client.get("/api/v1/badges", params={"token": SELLER})

        assert response.status_code == 200
        assert response.json() == {"type": "messages", "count": 0, "userId": SELLER}

    def test_history_of_others_is_403(self, client):
        response = client.get(
            "/api/v1/messages",
            params={"user1": BUYER, "user2": SELLER},
            headers=_auth("intruder"),
        )

        assert response.status_code == 403
        data = response.json()
        assert data["error"] == "FORBIDDEN"
        assert "timestamp" in data

    def test_spoofed_sender_is_403(self, client):
        response = _send(client, BUYER, SELLER, senderId=SELLER)
        assert response.status_code == 403

    def test_empty_message_is_400(self, client):
        response = _send(client, BUYER, SELLER, text="")

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_bad_body_is_400(self, client):
        response = client.post("/api/v1/messages", json={"text": "no receiver"}, headers=_auth(BUYER))

        assert response.status_code == 400
        assert response.json()["message"] == "Request validation failed"

    def test_mark_seen_and_badges(self, client):
        first = _send(client, BUYER, SELLER, "one").json()["message"]["id"]
        _send(client, BUYER, SELLER, "two")

        assert client.get("/api/v1/badges", headers=_auth(SELLER)).json()["count"] == 2

        seen = client.post("/api/v1/messages/seen", json={"messageIds": [first]}, headers=_auth(SELLER))
        assert seen.status_code == 200
        assert seen.json()["messageIds"] == [first]

        again = client.post("/api/v1/messages/seen", json={"messageIds": [first]}, headers=_auth(SELLER))
        assert again.json()["messageIds"] == []
        assert client.get("/api/v1/badges", headers=_auth(SELLER)).json()["count"] == 1

    def test_mark_seen_for_other_receiver_is_403(self, client):
        message_id = _send(client, BUYER, SELLER).json()["message"]["id"]

        response = client.post(
            "/api/v1/messages/seen",
            json={"messageIds": [message_id], "receiverId": SELLER},
            headers=_auth(BUYER),
        )
        assert response.status_code == 403

    def test_conversations(self, client):
        _send(client, BUYER, SELLER, "hi seller")
        _send(client, "buyer-2", SELLER, "x" * 100)

        response = client.get("/api/v1/conversations", headers=_auth(SELLER))

        assert response.status_code == 200
        conversations = response.json()
        assert [c["partnerId"] for c in conversations] == ["buyer-2", BUYER]
        assert conversations[0]["preview"].endswith("...")
        assert conversations[0]["unreadCount"] == 1


@pytest.mark.integration
@pytest.mark.bargain
class TestBargains:
    """Test bargain endpoints and negotiation sends."""

    def _open(self, client):
        _send(client, BUYER, SELLER, negotiation_text("P1", 6000), MessageKind.BARGAIN_START)
        _send(client, SELLER, BUYER, negotiation_text("P1", 5000), MessageKind.OFFER)
        _send(client, BUYER, SELLER, negotiation_text("P1", 4500), MessageKind.COUNTER_OFFER)

    def test_offer_counter_accept_freezes_price(self, client):
        self._open(client)

        accepted = client.post(
            "/api/v1/bargains/P1/accept",
            json={"counterpartyId": BUYER},
            headers=_auth(SELLER),
        )
        assert accepted.status_code == 201
        assert accepted.json()["message"]["messageType"] == "sellerAccept"

        response = client.get("/api/v1/bargains", params={"counterparty": SELLER}, headers=_auth(BUYER))
        body = response.json()
        session = body["sessions"][0]
        assert session["state"] == "accepted"
        assert session["frozen_price"] == 4500
        assert body["flags"]["accepted"] == [f"P1-{SELLER}"]

    def test_counter_own_offer_is_409(self, client):
        self._open(client)

        response = _send(client, BUYER, SELLER, negotiation_text("P1", 4400), MessageKind.COUNTER_OFFER)

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "ILLEGAL_BARGAIN_TRANSITION"
        assert data["details"]["state"] == "countered"

    def test_end_bargain_then_flags_ended(self, client):
        self._open(client)

        ended = client.post("/api/v1/bargains/P1/end", json={"counterpartyId": SELLER}, headers=_auth(BUYER))
        assert ended.status_code == 201

        history = client.get(
            "/api/v1/messages",
            params={"user1": BUYER, "user2": SELLER},
            headers=_auth(BUYER),
        ).json()
        assert history["flags"]["ended"] == [f"P1-{SELLER}"]

    def test_roles_provisional_and_claims_ignored(self, client):
        """Without a seller-only message, the opener is reported as buyer, unconfirmed."""
        _send(client, SELLER, BUYER, negotiation_text("P1", 5000, sellerId=SELLER), MessageKind.OFFER)

        response = client.get("/api/v1/bargains", params={"counterparty": SELLER}, headers=_auth(BUYER))

        session = response.json()["sessions"][0]
        assert session["buyer_id"] == SELLER
        assert session["roles_confirmed"] is False

    def test_accept_as_buyer_is_409(self, client):
        self._open(client)

        response = client.post(
            "/api/v1/bargains/P1/accept",
            json={"counterpartyId": SELLER},
            headers=_auth(BUYER),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "ILLEGAL_BARGAIN_TRANSITION"

    def test_action_without_bargain_is_409(self, client):
        response = client.post(
            "/api/v1/bargains/P9/decline",
            json={"counterpartyId": SELLER},
            headers=_auth(BUYER),
        )
        assert response.status_code == 409
