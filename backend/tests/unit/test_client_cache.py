"""
Tests for the client conversation cache.

WHAT: Test optimistic entries, merge dedupe, status monotonicity, reconciliation
WHY: The UI renders from the cache; duplicates or regressions show up on screen
HOW: ConversationCache in a pytest tmp_path
"""

import json
from datetime import datetime, timedelta

import pytest

from salmart.client.cache import CacheEntry, ConversationCache, SyncState, conversation_key
from salmart.models.message import ChatMessage, DeliveryStatus

VIEWER = "buyer-1"
PARTNER = "seller-1"
KEY = conversation_key(VIEWER, PARTNER)
NOW = datetime(2026, 1, 5, 12, 0, 0)


@pytest.fixture
def cache(tmp_path):
    return ConversationCache(cache_dir=tmp_path, retry_window=30)


def _server(message_id, status="sent", created_at=NOW, **extra):
    wire = ChatMessage(
        message_id=message_id,
        sender_id=VIEWER,
        receiver_id=PARTNER,
        text=f"text {message_id}",
        status=status,
        created_at=created_at,
    ).to_wire()
    wire.update(extra)
    return wire


def _pending(temp_id, created_at=NOW, text="hello"):
    return CacheEntry(
        temp_id=temp_id,
        sender_id=VIEWER,
        receiver_id=PARTNER,
        text=text,
        created_at=created_at,
    )


@pytest.mark.client
@pytest.mark.unit
class TestMerge:
    """Test live event merging."""

    def test_key_format(self):
        assert KEY == "chat_buyer-1_seller-1"

    def test_add_pending_persists(self, cache):
        entry = cache.add_pending(KEY, _pending("temp-1"))

        assert entry.sync_state == SyncState.PENDING
        assert entry.message_id is None
        assert [e.temp_id for e in cache.load(KEY)] == ["temp-1"]

    def test_add_pending_keeps_synced_entry_with_same_temp_id(self, cache):
        cache.merge(KEY, [_server("m1", tempId="temp-1")])

        cache.add_pending(KEY, _pending("temp-1", created_at=NOW + timedelta(seconds=1)))

        assert [(e.message_id, e.sync_state) for e in cache.load(KEY)] == [
            ("m1", SyncState.SYNCED),
            (None, SyncState.PENDING),
        ]

    def test_synced_message_replaces_optimistic_entry(self, cache):
        cache.add_pending(KEY, _pending("temp-1"))

        entries = cache.merge(KEY, [_server("m1", tempId="temp-1")])

        assert len(entries) == 1
        assert entries[0].message_id == "m1"
        assert entries[0].is_synced

    def test_duplicate_events_collapse(self, cache):
        """newMessage and messageSynced for the same send leave one entry."""
        cache.add_pending(KEY, _pending("temp-1"))

        cache.merge(KEY, [_server("m1", tempId="temp-1")])
        entries = cache.merge(KEY, [_server("m1", tempId="temp-1")])

        assert [e.message_id for e in entries] == ["m1"]

    def test_merge_never_downgrades_status(self, cache):
        cache.merge(KEY, [_server("m1", status="seen")])

        entries = cache.merge(KEY, [_server("m1", status="delivered")])

        assert entries[0].status == DeliveryStatus.SEEN

    def test_apply_status_forward_only(self, cache):
        cache.merge(KEY, [_server("m1"), _server("m2", status="seen", created_at=NOW + timedelta(seconds=1))])

        updated = cache.apply_status(KEY, ["m1", "m2"], DeliveryStatus.DELIVERED)

        statuses = {e.message_id: e.status for e in cache.load(KEY)}
        assert updated == 1
        assert statuses == {"m1": DeliveryStatus.DELIVERED, "m2": DeliveryStatus.SEEN}

    def test_mark_failed(self, cache):
        cache.add_pending(KEY, _pending("temp-1"))

        failed = cache.mark_failed(KEY, "temp-1")

        assert failed.sync_state == SyncState.FAILED
        assert cache.mark_failed(KEY, "temp-unknown") is None

    def test_unreadable_file_treated_as_empty(self, cache, tmp_path):
        (tmp_path / f"{KEY}.json").write_text("{broken", encoding="utf-8")
        assert cache.load(KEY) == []


@pytest.mark.client
@pytest.mark.unit
class TestReconcile:
    """Test replacing the cache with server history."""

    def test_old_pending_becomes_failed(self, cache):
        cache.add_pending(KEY, _pending("temp-old", created_at=NOW - timedelta(seconds=60)))
        cache.add_pending(KEY, _pending("temp-new", created_at=NOW - timedelta(seconds=5)))

        entries = cache.reconcile(KEY, [_server("m1")], now=NOW)

        by_temp = {e.temp_id: e.sync_state for e in entries if e.temp_id}
        assert by_temp == {"temp-old": SyncState.FAILED, "temp-new": SyncState.PENDING}
        assert "m1" in [e.message_id for e in entries]

    def test_server_history_replaces_synced_entries(self, cache):
        cache.merge(KEY, [_server("gone")])

        entries = cache.reconcile(KEY, [_server("m1"), _server("m2", created_at=NOW + timedelta(seconds=1))], now=NOW)

        assert [e.message_id for e in entries] == ["m1", "m2"]
        assert [e.message_id for e in cache.load(KEY)] == ["m1", "m2"]

    def test_pending_echoed_by_server_dropped(self, cache):
        """A send whose response was lost shows up once, as the stored message."""
        cache.add_pending(KEY, _pending("temp-1", created_at=NOW - timedelta(seconds=60)))
        cache.add_pending(KEY, _pending("temp-2", created_at=NOW - timedelta(seconds=5)))

        entries = cache.reconcile(KEY, [_server("m1", tempId="temp-1")], now=NOW)

        assert [(e.message_id, e.temp_id) for e in entries] == [("m1", "temp-1"), (None, "temp-2")]
        assert entries[0].is_synced


@pytest.mark.client
@pytest.mark.unit
class TestInitialMessage:
    """Test detection of the product's contextual first message."""

    def test_detects_matching_message(self, cache):
        body = json.dumps({"text": "Is this available?", "image": "http://img/1.png"})
        cache.merge(KEY, [_server("m1", text=body)])

        assert cache.detect_initial_message(KEY, VIEWER, "P1", "Is this available?", "http://img/1.png")
        # Remembered even after the cache is emptied of messages
        cache.save(KEY, [])
        assert cache.detect_initial_message(KEY, VIEWER, "P1", "Is this available?", "http://img/1.png")

    def test_different_image_not_matched(self, cache):
        body = json.dumps({"text": "Is this available?", "image": "http://img/1.png"})
        cache.merge(KEY, [_server("m1", text=body)])

        assert not cache.detect_initial_message(KEY, VIEWER, "P2", "Is this available?", "http://img/2.png")
