"""
Client-side conversation cache.

WHAT: File-backed JSON mirror of each conversation a client has opened
WHY: Offline history, optimistic sends and reconciliation after reconnects
HOW: One JSON file per (viewer, partner); every live mutation goes through merge()
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import Field, ValidationError as PydanticValidationError

from ..core.config import settings
from ..models.message import STATUS_RANK, ChatMessage, DeliveryStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SyncState(str, Enum):
    """Whether the server has confirmed a cached entry."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class CacheEntry(ChatMessage):
    """
    A cached message; optimistic entries have a tempId and no server id yet.
    """

    message_id: Optional[str] = Field(default=None, alias="id")
    temp_id: Optional[str] = Field(default=None, alias="tempId")
    sync_state: SyncState = Field(default=SyncState.SYNCED, alias="syncState")

    @property
    def is_synced(self) -> bool:
        return self.sync_state == SyncState.SYNCED and self.message_id is not None


IncomingMessage = Union[ChatMessage, dict]


def _as_entry(incoming: IncomingMessage) -> CacheEntry:
    """Confirmed server message (model or wire dict) as a synced cache entry."""
    data = incoming.to_wire() if isinstance(incoming, ChatMessage) else dict(incoming)
    data["syncState"] = SyncState.SYNCED.value
    return CacheEntry.model_validate(data)


def conversation_key(viewer_id: str, partner_id: str) -> str:
    """Cache key for the viewer's copy of a conversation."""
    return f"chat_{viewer_id}_{partner_id}"


class ConversationCache:
    """
    Local mirror of conversations.

    WHAT: Load/save cached entries; merge live events; reconcile with server history
    WHY: The UI renders from here whether or not the server is reachable
    HOW: JSON files in CLIENT_CACHE_DIR, rewritten atomically
    """

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None, retry_window: Optional[int] = None):
        """
        Args:
            cache_dir: Directory for cache files (defaults to settings.CLIENT_CACHE_DIR)
            retry_window: Seconds an unsynced send stays pending before it is marked failed
        """
        self.cache_dir = Path(cache_dir or settings.CLIENT_CACHE_DIR)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.retry_window = timedelta(
            seconds=retry_window if retry_window is not None else settings.PENDING_SEND_RETRY_WINDOW
        )

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def _read(self, key: str) -> dict:
        path = self._path(key)
        if not path.exists():
            return {"messages": [], "initialMessageSent": []}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Discarding unreadable cache file {path}: {e}")
            return {"messages": [], "initialMessageSent": []}
        if not isinstance(data, dict):
            logger.warning(f"Discarding cache file {path} with unexpected shape")
            return {"messages": [], "initialMessageSent": []}
        data.setdefault("messages", [])
        data.setdefault("initialMessageSent", [])
        return data

    def _write(self, key: str, data: dict) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

    def load(self, key: str) -> list[CacheEntry]:
        """Cached entries in display order; invalid entries are skipped."""
        entries = []
        for index, raw in enumerate(self._read(key)["messages"]):
            try:
                entries.append(CacheEntry.model_validate(raw))
            except PydanticValidationError:
                logger.warning(f"Skipping invalid cached message at index {index} in {key}")
        return entries

    def save(self, key: str, entries: list[CacheEntry]) -> None:
        data = self._read(key)
        data["messages"] = [
            entry.model_dump(by_alias=True, mode="json") for entry in self._ordered(entries)
        ]
        self._write(key, data)

    @staticmethod
    def _ordered(entries: list[CacheEntry]) -> list[CacheEntry]:
        # Stable: equal timestamps keep arrival order
        return sorted(entries, key=lambda entry: entry.created_at)

    def add_pending(self, key: str, entry: CacheEntry) -> CacheEntry:
        """Record an optimistic send under its tempId."""
        pending = entry.model_copy(update={"sync_state": SyncState.PENDING, "message_id": None})
        entries = [
            e for e in self.load(key)
            if e.is_synced or not (pending.temp_id and e.temp_id == pending.temp_id)
        ]
        entries.append(pending)
        self.save(key, entries)
        return pending

    def merge(self, key: str, incoming: Iterable[IncomingMessage]) -> list[CacheEntry]:
        """
        Merge confirmed messages into the cache.

        Duplicates (same id) collapse into one entry whose status never moves
        backwards; a message carrying a tempId replaces the optimistic entry
        with that tempId.

        Returns:
            The merged entry list
        """
        entries = self.load(key)

        for item in incoming:
            confirmed = _as_entry(item)

            if confirmed.temp_id:
                entries = [e for e in entries if not (e.temp_id == confirmed.temp_id and not e.is_synced)]

            for index, existing in enumerate(entries):
                if existing.message_id is not None and existing.message_id == confirmed.message_id:
                    if STATUS_RANK[existing.status] > STATUS_RANK[confirmed.status]:
                        confirmed = confirmed.model_copy(update={"status": existing.status})
                    entries[index] = confirmed
                    break
            else:
                entries.append(confirmed)

        self.save(key, entries)
        return self._ordered(entries)

    def apply_status(self, key: str, message_ids: Iterable[str], status: DeliveryStatus) -> int:
        """
        Advance cached delivery status (messagesDelivered/messagesSeen events).

        Returns:
            Number of entries updated
        """
        wanted = set(message_ids)
        entries = self.load(key)
        updated = 0
        for index, entry in enumerate(entries):
            if entry.message_id in wanted and STATUS_RANK[entry.status] < STATUS_RANK[status]:
                entries[index] = entry.model_copy(update={"status": status})
                updated += 1
        if updated:
            self.save(key, entries)
        return updated

    def mark_failed(self, key: str, temp_id: str) -> Optional[CacheEntry]:
        """Flag an optimistic send as failed so the UI can offer a retry."""
        entries = self.load(key)
        for index, entry in enumerate(entries):
            if entry.temp_id == temp_id and not entry.is_synced:
                entries[index] = entry.model_copy(update={"sync_state": SyncState.FAILED})
                self.save(key, entries)
                return entries[index]
        return None

    def unsynced(self, key: str) -> list[CacheEntry]:
        return [entry for entry in self.load(key) if not entry.is_synced]

    def reconcile(
        self,
        key: str,
        history: Iterable[IncomingMessage],
        now: Optional[datetime] = None,
    ) -> list[CacheEntry]:
        """
        Replace cached history with the server's list.

        Local entries the server does not know are kept. Those queued longer
        than the retry window become failed; younger ones stay pending. An
        entry whose tempId the server echoes back was stored and is dropped.

        Returns:
            Reconciled entry list
        """
        now = now or datetime.utcnow()
        confirmed = [_as_entry(item) for item in history]
        stored_temp_ids = {entry.temp_id for entry in confirmed if entry.temp_id}

        leftovers = []
        for entry in self.load(key):
            if entry.is_synced or entry.temp_id in stored_temp_ids:
                continue
            if entry.sync_state == SyncState.PENDING and now - entry.created_at > self.retry_window:
                logger.warning(f"Send {entry.temp_id} unconfirmed after {self.retry_window}, marking failed")
                entry = entry.model_copy(update={"sync_state": SyncState.FAILED})
            leftovers.append(entry)

        self.save(key, confirmed + leftovers)
        return self._ordered(confirmed + leftovers)

    def detect_initial_message(
        self,
        key: str,
        viewer_id: str,
        product_id: str,
        text: str,
        image: Optional[str],
    ) -> bool:
        """
        Whether the viewer already sent the product's contextual first message.

        Matches a synced text message from the viewer whose JSON body has the
        same `text` and `image`. A positive result is remembered per product.
        """
        data = self._read(key)
        if product_id in data["initialMessageSent"]:
            return True

        for entry in self.load(key):
            if not entry.is_synced or entry.sender_id != viewer_id or not (entry.text or "").startswith("{"):
                continue
            try:
                parsed = json.loads(entry.text)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict) and parsed.get("text") == text and parsed.get("image") == image:
                data["initialMessageSent"].append(product_id)
                self._write(key, data)
                return True
        return False

    def clear(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
